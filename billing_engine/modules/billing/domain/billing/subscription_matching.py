"""
Subscription Matching

Correlates an inbound Paystack payment with the pending subscription it pays
for. The payment reference is not reliably echoed back in processor metadata,
so several signals are scored independently and the best candidate wins:

1. Checkout-time reference mapping in Redis   (confidence 100, priority 1000)
2. subscription_id embedded in metadata       (confidence 95/85, priority 900 - 50/warning)
3. Payer email + plan amount within 2%        (confidence 80/70, priority 700 - 100/position)
4. Amount + currency only, last resort        (confidence 60/50, priority 500 - 50/position)

Ambiguous low-confidence results are rejected rather than guessed so the
payment lands in the operator queue instead of activating the wrong customer.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field, field_validator
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models.billing import BillingPlan, Subscription, User
from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.currency import from_subunit, to_subunit

from .paystack_shared import SubscriptionStatus, email_hash, reference_mapping_key

logger = structlog.get_logger()

ACCEPT_CONFIDENCE = 70
MIN_CONFIDENCE = 50
METADATA_AMOUNT_TOLERANCE = Decimal("0.05")
EMAIL_AMOUNT_TOLERANCE = Decimal("0.02")
USER_CANDIDATE_LIMIT = 3
AMOUNT_ONLY_CANDIDATE_LIMIT = 5
LOW_CONFIDENCE_WARNING = "Low confidence match - manual review recommended"


class PaymentCorrelation(BaseModel):
    """Normalized view of an inbound payment. `amount` is in minor units (kobo/cents)."""

    reference: str
    amount: int
    currency: str
    payment_id: str
    user_email: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _normalize_metadata(cls, value: Any) -> dict[str, Any]:
        return parse_metadata(value)

    @classmethod
    def from_paystack_charge(cls, data: dict[str, Any]) -> "PaymentCorrelation":
        """Build from a `charge.success` payload or a transaction verification result."""
        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        return cls(
            reference=str(data.get("reference") or ""),
            amount=_coerce_amount(data.get("amount")),
            currency=str(data.get("currency") or get_settings().PAYSTACK_DEFAULT_CURRENCY).upper(),
            payment_id=str(data.get("id") or ""),
            user_email=customer.get("email") or None,
            metadata=data.get("metadata"),
        )

    def setup_subscription_id(self) -> Optional[UUID]:
        """Subscription id carried by checkout-initiated (`subscription_setup`) payments."""
        if self.metadata.get("type") != "subscription_setup":
            return None
        return _coerce_uuid(self.metadata.get("subscription_id"))


class SubscriptionMatch(BaseModel):
    subscription_id: UUID
    confidence: int = Field(ge=0, le=100)
    match_reasons: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    priority: int


def parse_metadata(raw: Any) -> dict[str, Any]:
    """Paystack delivers metadata as an object or as a JSON string."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _coerce_amount(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _coerce_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class CandidateMatcher:
    """Scores subscription candidates for a payment and picks one, or none."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], redis: Redis):
        self._session_maker = session_maker
        self._redis = redis

    async def remember_reference(
        self, reference: str, subscription_id: UUID, ttl_seconds: int
    ) -> None:
        """Store the checkout-time reference hint consumed by the first layer."""
        await self._redis.set(
            reference_mapping_key(reference),
            json.dumps({"subscriptionId": str(subscription_id)}),
            ex=ttl_seconds,
        )

    async def find_best_match(
        self, correlation: PaymentCorrelation
    ) -> Optional[SubscriptionMatch]:
        async with self._session_maker() as session:
            candidates: list[SubscriptionMatch] = []
            candidates.extend(await self._match_reference_mapping(session, correlation))
            candidates.extend(await self._match_metadata(session, correlation))
            candidates.extend(await self._match_user_email(session, correlation))
            if not candidates:
                candidates.extend(await self._match_amount_only(session, correlation))

        return self._select(correlation, candidates)

    async def _load_subscription(
        self, session: AsyncSession, subscription_id: UUID
    ) -> Optional[Subscription]:
        result = await session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def _match_reference_mapping(
        self, session: AsyncSession, correlation: PaymentCorrelation
    ) -> list[SubscriptionMatch]:
        try:
            raw = await self._redis.get(reference_mapping_key(correlation.reference))
        except RedisError as exc:
            # The mapping is a hint; the remaining layers still apply.
            logger.warning(
                "subscription_match_mapping_lookup_failed",
                reference=correlation.reference,
                error=str(exc),
            )
            return []
        if not raw:
            return []

        try:
            mapping = json.loads(raw)
        except ValueError:
            logger.warning("subscription_match_mapping_invalid", reference=correlation.reference)
            return []
        subscription_id = _coerce_uuid(
            mapping.get("subscriptionId") if isinstance(mapping, dict) else None
        )
        if subscription_id is None:
            return []

        subscription = await self._load_subscription(session, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.INCOMPLETE.value:
            return []
        return [
            SubscriptionMatch(
                subscription_id=subscription.id,
                confidence=100,
                match_reasons=["redis_reference_mapping"],
                priority=1000,
            )
        ]

    async def _match_metadata(
        self, session: AsyncSession, correlation: PaymentCorrelation
    ) -> list[SubscriptionMatch]:
        subscription_id = _coerce_uuid(correlation.metadata.get("subscription_id"))
        if subscription_id is None:
            return []

        subscription = await self._load_subscription(session, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.INCOMPLETE.value:
            return []

        warnings: list[str] = []
        if (
            correlation.user_email
            and subscription.user.email.lower() != correlation.user_email.lower()
        ):
            warnings.append(
                f"Email mismatch: metadata={correlation.user_email}, "
                f"subscription={subscription.user.email}"
            )

        expected = to_subunit(subscription.plan.price)
        if abs(correlation.amount - expected) > expected * METADATA_AMOUNT_TOLERANCE:
            warnings.append(
                f"Amount mismatch: payment={correlation.amount}, expected={expected}"
            )

        return [
            SubscriptionMatch(
                subscription_id=subscription.id,
                confidence=85 if warnings else 95,
                match_reasons=["metadata_subscription_id"],
                warnings=warnings,
                priority=900 - len(warnings) * 50,
            )
        ]

    async def _match_user_email(
        self, session: AsyncSession, correlation: PaymentCorrelation
    ) -> list[SubscriptionMatch]:
        if not correlation.user_email:
            return []

        user = (
            await session.execute(
                select(User).where(
                    func.lower(User.email) == correlation.user_email.strip().lower()
                )
            )
        ).scalar_one_or_none()
        if user is None:
            return []

        result = await session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user.id,
                Subscription.status == SubscriptionStatus.INCOMPLETE.value,
            )
            .order_by(Subscription.created_at.desc())
            .limit(USER_CANDIDATE_LIMIT)
        )
        subscriptions = list(result.unique().scalars().all())

        matches: list[SubscriptionMatch] = []
        for position, subscription in enumerate(subscriptions):
            expected = to_subunit(subscription.plan.price)
            difference = abs(correlation.amount - expected)
            if difference > expected * EMAIL_AMOUNT_TOLERANCE:
                continue
            matches.append(
                SubscriptionMatch(
                    subscription_id=subscription.id,
                    confidence=80 if difference == 0 else 70,
                    match_reasons=["user_email_amount_match"],
                    warnings=[f"Amount difference: {difference} subunits"] if difference else [],
                    priority=700 - position * 100,
                )
            )
        return matches

    async def _match_amount_only(
        self, session: AsyncSession, correlation: PaymentCorrelation
    ) -> list[SubscriptionMatch]:
        implied_price = from_subunit(correlation.amount)
        result = await session.execute(
            select(Subscription)
            .join(BillingPlan, Subscription.plan_id == BillingPlan.id)
            .where(
                Subscription.status == SubscriptionStatus.INCOMPLETE.value,
                BillingPlan.currency == correlation.currency.upper(),
                BillingPlan.price >= implied_price * (1 - EMAIL_AMOUNT_TOLERANCE),
                BillingPlan.price <= implied_price * (1 + EMAIL_AMOUNT_TOLERANCE),
            )
            .order_by(Subscription.created_at.desc())
            .limit(AMOUNT_ONLY_CANDIDATE_LIMIT)
        )
        subscriptions = list(result.unique().scalars().all())

        return [
            SubscriptionMatch(
                subscription_id=subscription.id,
                confidence=60 if to_subunit(subscription.plan.price) == correlation.amount else 50,
                match_reasons=["amount_currency_match"],
                warnings=[
                    "No user email correlation",
                    f"Matched by amount only: {subscription.plan.price} {subscription.plan.currency}",
                ],
                priority=500 - position * 50,
            )
            for position, subscription in enumerate(subscriptions)
        ]

    def _select(
        self, correlation: PaymentCorrelation, candidates: list[SubscriptionMatch]
    ) -> Optional[SubscriptionMatch]:
        if not candidates:
            logger.info(
                "subscription_match_none",
                reference=correlation.reference,
                email_hash=email_hash(correlation.user_email),
            )
            return None

        ranked = sorted(candidates, key=lambda c: (c.priority, c.confidence), reverse=True)
        best = ranked[0]

        if best.confidence >= ACCEPT_CONFIDENCE:
            self._log_selected(correlation, best)
            return best

        if best.confidence >= MIN_CONFIDENCE:
            conflicts = [
                c
                for c in ranked
                if c.subscription_id != best.subscription_id and c.confidence >= MIN_CONFIDENCE
            ]
            if not conflicts:
                best.warnings.append(LOW_CONFIDENCE_WARNING)
                self._log_selected(correlation, best)
                return best

            logger.warning(
                "subscription_match_ambiguous",
                reference=correlation.reference,
                candidates=[
                    {
                        "subscription_id": str(c.subscription_id),
                        "confidence": c.confidence,
                        "reasons": c.match_reasons,
                    }
                    for c in ranked
                ],
            )
            return None

        logger.info(
            "subscription_match_below_threshold",
            reference=correlation.reference,
            confidence=best.confidence,
        )
        return None

    @staticmethod
    def _log_selected(correlation: PaymentCorrelation, match: SubscriptionMatch) -> None:
        logger.info(
            "subscription_match_selected",
            reference=correlation.reference,
            subscription_id=str(match.subscription_id),
            confidence=match.confidence,
            priority=match.priority,
            reasons=match.match_reasons,
            warnings=match.warnings,
        )
