"""
Match validation.

Re-reads the matched subscription fresh, since state may have moved between
matching and activation, and applies the hard constraints that must hold
before a payment is allowed to activate it.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models.billing import Payment, Subscription, SubscriptionHistory
from billing_engine.shared.core.currency import to_subunit

from .paystack_shared import HistoryAction, SubscriptionStatus
from .subscription_matching import PaymentCorrelation, SubscriptionMatch

logger = structlog.get_logger()

HIGH_CONFIDENCE = 80
HIGH_CONFIDENCE_AMOUNT_TOLERANCE = Decimal("0.05")
DEFAULT_RECENT_ACTIVATION_WINDOW_SECONDS = 60


class ValidationResult(BaseModel):
    is_valid: bool
    reason: Optional[str] = None


class MatchValidator:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        recent_activation_window_seconds: int = DEFAULT_RECENT_ACTIVATION_WINDOW_SECONDS,
    ):
        self._session_maker = session_maker
        self.recent_activation_window_seconds = recent_activation_window_seconds

    async def validate(
        self, match: SubscriptionMatch, correlation: PaymentCorrelation
    ) -> ValidationResult:
        """Checks run in a fixed order; the first failure is reported."""
        async with self._session_maker() as session:
            result = await self._validate(session, match, correlation)

        if result.is_valid:
            logger.info(
                "subscription_match_validated",
                subscription_id=str(match.subscription_id),
                reference=correlation.reference,
                confidence=match.confidence,
            )
        else:
            logger.warning(
                "subscription_match_rejected",
                subscription_id=str(match.subscription_id),
                reference=correlation.reference,
                reason=result.reason,
            )
        return result

    async def _validate(
        self,
        session: AsyncSession,
        match: SubscriptionMatch,
        correlation: PaymentCorrelation,
    ) -> ValidationResult:
        subscription = (
            await session.execute(
                select(Subscription).where(Subscription.id == match.subscription_id)
            )
        ).scalar_one_or_none()
        if subscription is None:
            return ValidationResult(is_valid=False, reason="Subscription not found")

        existing_payment = (
            await session.execute(
                select(Payment).where(Payment.provider_payment_ref == correlation.reference)
            )
        ).scalar_one_or_none()
        if existing_payment is not None:
            if existing_payment.subscription_id == subscription.id:
                return ValidationResult(
                    is_valid=False,
                    reason="Payment already processed for this subscription",
                )
            return ValidationResult(
                is_valid=False,
                reason="Payment reference already linked to a different subscription",
            )

        if subscription.status != SubscriptionStatus.INCOMPLETE.value:
            return ValidationResult(
                is_valid=False,
                reason=f"Subscription status is {subscription.status}, not incomplete",
            )

        window_start = datetime.now(timezone.utc) - timedelta(
            seconds=self.recent_activation_window_seconds
        )
        recent_activation = (
            await session.execute(
                select(SubscriptionHistory.id)
                .where(
                    SubscriptionHistory.subscription_id == subscription.id,
                    SubscriptionHistory.action == HistoryAction.ACTIVATED.value,
                    SubscriptionHistory.created_at >= window_start,
                )
                .limit(1)
            )
        ).scalar_one_or_none()
        if recent_activation is not None:
            return ValidationResult(is_valid=False, reason="Subscription was recently activated")

        if match.confidence >= HIGH_CONFIDENCE:
            expected = to_subunit(subscription.plan.price)
            if abs(correlation.amount - expected) > expected * HIGH_CONFIDENCE_AMOUNT_TOLERANCE:
                return ValidationResult(
                    is_valid=False,
                    reason=(
                        f"Amount validation failed: expected {expected}, "
                        f"got {correlation.amount}"
                    ),
                )

        return ValidationResult(is_valid=True)
