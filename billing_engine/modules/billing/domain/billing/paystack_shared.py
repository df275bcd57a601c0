"""Shared primitives for Paystack billing modules."""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger()

PAYSTACK_REFERENCE_MAPPING_PREFIX = "paystack:ref"


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle statuses."""

    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HistoryAction(str, Enum):
    ACTIVATED = "activated"
    PROVIDER_LINKED = "provider_linked"
    CANCELLED = "cancelled"


class ActivationSource(str, Enum):
    """Where an activation request originated. Recorded on history and audit rows."""

    WEBHOOK = "webhook"
    VERIFICATION = "verification"
    MANUAL = "manual"
    MANUAL_RECOVERY = "manual_recovery"
    RECONCILIATION = "reconciliation"


_SOURCE_DESCRIPTIONS: dict[ActivationSource, str] = {
    ActivationSource.WEBHOOK: "Paystack webhook",
    ActivationSource.VERIFICATION: "payment verification callback",
    ActivationSource.MANUAL: "manual activation",
    ActivationSource.MANUAL_RECOVERY: "manual recovery",
    ActivationSource.RECONCILIATION: "reconciliation job",
}


def describe_source(source: ActivationSource) -> str:
    try:
        return _SOURCE_DESCRIPTIONS[source]
    except KeyError:
        raise ValueError(f"Unhandled activation source: {source!r}") from None


def reference_mapping_key(reference: str) -> str:
    """Cache key of the checkout-time reference -> subscription hint."""
    return f"{PAYSTACK_REFERENCE_MAPPING_PREFIX}:{reference}"


def email_hash(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]
