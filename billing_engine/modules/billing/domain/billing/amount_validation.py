"""
Payment amount validation.

Compares a paid amount (subunits) with the plan price and suggests what to do
with the difference. Used to audit discrepancies on matched payments; the
match validator applies its own hard tolerance before activation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models.billing import Subscription
from billing_engine.modules.governance.domain.security.audit_log import (
    AuditEventType,
    AuditLogger,
)
from billing_engine.shared.core.currency import to_subunit

logger = structlog.get_logger()

SIGNIFICANT_DISCREPANCY = Decimal("0.05")
OVERPAYMENT_REVIEW_THRESHOLD = Decimal("0.10")


class SuggestedAction(str, Enum):
    ACCEPT = "accept"
    REVIEW = "review"
    REJECT = "reject"


@dataclass(frozen=True)
class AmountValidationConfig:
    tolerance_percentage: Decimal = Decimal("0.02")
    max_absolute_difference: int = 500
    allow_overpayment: bool = True
    allow_underpayment: bool = False


DEFAULT_AMOUNT_VALIDATION_CONFIG = AmountValidationConfig()


@dataclass(frozen=True)
class AmountValidationResult:
    is_valid: bool
    expected_amount: int
    actual_amount: int
    discrepancy: int
    discrepancy_percentage: Decimal
    tolerance: Decimal
    suggested_action: SuggestedAction
    reason: Optional[str] = None


def _percent(value: Decimal) -> str:
    return str((value * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def evaluate_payment_amount(
    expected_amount: int,
    actual_amount: int,
    expected_currency: str,
    actual_currency: str,
    config: AmountValidationConfig = DEFAULT_AMOUNT_VALIDATION_CONFIG,
) -> AmountValidationResult:
    """All amounts in subunits. Tolerance is the larger of the relative and absolute limits."""
    discrepancy = actual_amount - expected_amount
    if expected_amount > 0:
        discrepancy_percentage = Decimal(abs(discrepancy)) / Decimal(expected_amount)
    else:
        discrepancy_percentage = Decimal(1) if discrepancy else Decimal(0)
    tolerance = max(
        Decimal(expected_amount) * config.tolerance_percentage,
        Decimal(config.max_absolute_difference),
    )
    result = AmountValidationResult(
        is_valid=True,
        expected_amount=expected_amount,
        actual_amount=actual_amount,
        discrepancy=discrepancy,
        discrepancy_percentage=discrepancy_percentage,
        tolerance=tolerance,
        suggested_action=SuggestedAction.ACCEPT,
    )

    if actual_currency.upper() != expected_currency.upper():
        return replace(
            result,
            is_valid=False,
            suggested_action=SuggestedAction.REJECT,
            reason=f"Currency mismatch: expected {expected_currency}, got {actual_currency}",
        )

    if abs(discrepancy) <= tolerance:
        return result

    if discrepancy > 0:
        if not config.allow_overpayment:
            return replace(
                result,
                is_valid=False,
                suggested_action=SuggestedAction.REJECT,
                reason=f"Overpayment not allowed: {discrepancy} subunits excess",
            )
        return replace(
            result,
            suggested_action=(
                SuggestedAction.REVIEW
                if discrepancy_percentage > OVERPAYMENT_REVIEW_THRESHOLD
                else SuggestedAction.ACCEPT
            ),
            reason=f"Overpayment of {discrepancy} subunits ({_percent(discrepancy_percentage)}%)",
        )

    if not config.allow_underpayment:
        return replace(
            result,
            is_valid=False,
            suggested_action=SuggestedAction.REJECT,
            reason=f"Underpayment: {abs(discrepancy)} subunits short",
        )
    return replace(
        result,
        suggested_action=SuggestedAction.REVIEW,
        reason=f"Underpayment of {abs(discrepancy)} subunits ({_percent(discrepancy_percentage)}%)",
    )


async def validate_payment_amount(
    session_maker: async_sessionmaker[AsyncSession],
    subscription_id: UUID,
    amount: int,
    currency: str,
    config: AmountValidationConfig = DEFAULT_AMOUNT_VALIDATION_CONFIG,
) -> AmountValidationResult:
    async with session_maker() as session:
        subscription = (
            await session.execute(select(Subscription).where(Subscription.id == subscription_id))
        ).scalar_one_or_none()

    if subscription is None:
        return AmountValidationResult(
            is_valid=False,
            expected_amount=0,
            actual_amount=amount,
            discrepancy=amount,
            discrepancy_percentage=Decimal(1),
            tolerance=Decimal(0),
            suggested_action=SuggestedAction.REJECT,
            reason="Subscription not found",
        )

    return evaluate_payment_amount(
        to_subunit(subscription.plan.price),
        amount,
        subscription.plan.currency,
        currency,
        config,
    )


async def record_amount_validation(
    audit_logger: AuditLogger,
    subscription_id: UUID,
    reference: str,
    validation: AmountValidationResult,
    user_id: Optional[UUID] = None,
) -> None:
    """Audit failed validations, and significant discrepancies that still passed."""
    details = {
        "subscription_id": str(subscription_id),
        "reference": reference,
        "expected_amount": validation.expected_amount,
        "actual_amount": validation.actual_amount,
        "discrepancy": validation.discrepancy,
        "discrepancy_percentage": str(validation.discrepancy_percentage),
        "suggested_action": validation.suggested_action.value,
        "reason": validation.reason,
    }

    if not validation.is_valid:
        logger.warning("payment_amount_validation_failed", **details)
        await audit_logger.try_log(
            AuditEventType.PAYMENT_AMOUNT_MISMATCH,
            user_id=user_id,
            resource_type="subscription",
            resource_id=str(subscription_id),
            correlation_id=reference,
            details=details,
            success=False,
            error_message=validation.reason,
        )
        return

    if validation.discrepancy_percentage > SIGNIFICANT_DISCREPANCY:
        logger.warning("payment_amount_discrepancy", **details)
        await audit_logger.try_log(
            AuditEventType.PAYMENT_AMOUNT_DISCREPANCY,
            user_id=user_id,
            resource_type="subscription",
            resource_id=str(subscription_id),
            correlation_id=reference,
            details=details,
        )
        return

    logger.debug("payment_amount_validation_passed", **details)
