from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4
from typing import Optional
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Numeric,
    Boolean,
    Integer,
    ForeignKey,
    Index,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Account owner. Only the fields the billing engine correlates on."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="user")


class BillingPlan(Base):
    """
    Priced plan a subscription is bound to.
    `price` is in the major currency unit.
    """

    __tablename__ = "billing_plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    interval: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Subscription(Base):
    """
    Subscription record created `incomplete` by checkout and moved through
    its lifecycle only by the activation and cancellation workflows.
    Rows are never physically deleted.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index("ix_subscriptions_status_created", "status", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("billing_plans.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="incomplete")

    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)

    # Paystack IDs
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(255))

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_payment_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped[User] = relationship(back_populates="subscriptions", lazy="joined")
    plan: Mapped[BillingPlan] = relationship(lazy="joined")


class Payment(Base):
    """
    A processor transaction attached to a subscription.
    `provider_payment_ref` is unique: one row per processor transaction.
    `amount` is in the major currency unit.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(), ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(255))
    provider_payment_ref: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    authorization_code: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class SubscriptionHistory(Base):
    """Append-only log of status-affecting subscription transitions."""

    __tablename__ = "subscription_history"
    __table_args__ = (
        Index("ix_subscription_history_sub_action_created", "subscription_id", "action", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("subscriptions.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text)
    new_value: Mapped[Optional[str]] = mapped_column(Text)
    reason: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
