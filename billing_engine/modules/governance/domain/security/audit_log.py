"""
Audit Logging

Append-only audit trail for billing state changes. Entries are written by the
activation and cancellation workflows and by the webhook handler for payments
that could not be correlated (the operator queue for manual linking).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from sqlalchemy import String, Text, JSON, Uuid, DateTime, Boolean, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column
import structlog

from billing_engine.shared.db.base import Base

logger = structlog.get_logger()


class AuditEventType(str, Enum):
    """Categorized audit event types for filtering and reporting."""

    SUBSCRIPTION_ACTIVATED = "billing.subscription_activated"
    SUBSCRIPTION_LINKED = "billing.subscription_linked"
    SUBSCRIPTION_CANCELLED = "billing.subscription_cancelled"
    SUBSCRIPTION_UPDATED = "billing.subscription_updated"
    PAYMENT_UNMATCHED = "billing.payment_unmatched"
    PAYMENT_REJECTED = "billing.payment_rejected"
    PAYMENT_AMOUNT_MISMATCH = "billing.payment_amount_mismatch"
    PAYMENT_AMOUNT_DISCREPANCY = "billing.payment_amount_discrepancy"


class AuditLog(Base):
    """
    Immutable audit log entry.

    - No UPDATE or DELETE operations (append-only)
    - Correlation ID links related events (payment reference)
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[Optional[str]] = mapped_column(String(50))
    resource_id: Mapped[Optional[str]] = mapped_column(String(255))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), default=dict
    )
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class AuditLogger:
    """
    Writes audit entries in their own short transaction.

    Callers treat a failed write as non-fatal: the billing state it describes
    has already been committed.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def log(
        self,
        event_type: AuditEventType,
        *,
        user_id: Optional[uuid.UUID] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            event_type=event_type.value,
            resource_type=resource_type,
            resource_id=resource_id,
            correlation_id=correlation_id,
            details=_jsonable(details or {}),
            success=success,
            error_message=error_message,
        )
        async with self._session_maker() as session, session.begin():
            session.add(entry)

        logger.info(
            "audit_event",
            event_type=event_type.value,
            resource_type=resource_type,
            resource_id=resource_id,
            correlation_id=correlation_id,
            success=success,
        )
        return entry

    async def try_log(self, event_type: AuditEventType, **kwargs: Any) -> Optional[AuditLog]:
        """Best-effort variant: a failed write is logged, never raised."""
        try:
            return await self.log(event_type, **kwargs)
        except Exception as exc:
            logger.warning(
                "billing_audit_log_failed",
                event_type=event_type.value,
                resource_id=kwargs.get("resource_id"),
                error=str(exc),
            )
            return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
