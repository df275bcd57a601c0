"""
Subscription Activation

Moves a subscription from `incomplete` to `active` exactly once per payment:

1. Per-subscription distributed lock (timeout -> `lock_timeout`, retry later)
2. Idempotency guard keyed by (subscription, reference); successes are cached
3. Single transaction: fresh row read, payment find-or-create, billing period,
   history row
4. Paystack subscription linking, OUTSIDE the transaction: a processor failure
   never rolls back a committed activation. The lease is first extended to
   cover the worst-case Paystack round trips; a lost lease skips linking
5. Audit entry
6. Lock release on every path

`active -> active` is an idempotent no-op that still attempts step 4 when the
subscription has no Paystack subscription code yet.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models.billing import Payment, Subscription, SubscriptionHistory
from billing_engine.modules.governance.domain.security.audit_log import (
    AuditEventType,
    AuditLogger,
)
from billing_engine.shared.core.currency import (
    from_subunit,
    get_paystack_currency,
    to_subunit,
)
from billing_engine.shared.core.exceptions import PaymentProviderError
from billing_engine.shared.core.retry import RETRY_CONFIGS

from .distributed_lock import DistributedLock, activation_lock_key
from .idempotency import IdempotencyGuard, activation_idempotency_key
from .paystack_client_impl import PaystackClient
from .paystack_shared import (
    ActivationSource,
    HistoryAction,
    PaymentStatus,
    SubscriptionStatus,
    describe_source,
)

logger = structlog.get_logger()

ACTIVATABLE_STATUSES = {SubscriptionStatus.INCOMPLETE.value, SubscriptionStatus.ACTIVE.value}
# Linking makes up to three Paystack calls: plan lookup, plan creation, subscription.
PROVIDER_LINK_CALLS = 3
PROVIDER_LINK_MARGIN_SECONDS = 5.0


def provider_link_lease_seconds(timeout_seconds: float, max_retries: int) -> float:
    """Worst-case time spent linking a Paystack subscription, retries included."""
    attempts = max(max_retries, 1)
    max_wait = float(RETRY_CONFIGS["external_api"]["max_wait"])
    per_call = timeout_seconds * attempts + max_wait * (attempts - 1)
    return per_call * PROVIDER_LINK_CALLS + PROVIDER_LINK_MARGIN_SECONDS


class ActivationReason(str, Enum):
    LOCK_TIMEOUT = "lock_timeout"
    INVALID_STATUS = "invalid_status"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    ALREADY_ACTIVE = "already_active"
    PAYMENT_REFERENCE_CONFLICT = "payment_reference_conflict"


class PaymentData(BaseModel):
    """Processor payment details. `amount` is in minor units."""

    reference: Optional[str] = None
    payment_id: Optional[str] = None
    amount: int
    currency: Optional[str] = None
    authorization_code: Optional[str] = None


class ActivationRequest(BaseModel):
    subscription_id: UUID
    payment_data: PaymentData
    source: ActivationSource


class SubscriptionSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    plan_id: UUID
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None


class PaymentSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    amount: Decimal
    currency: str
    status: str
    provider_payment_ref: str
    provider_payment_id: Optional[str] = None


class ActivationResult(BaseModel):
    success: bool
    reason: Optional[ActivationReason] = None
    subscription: Optional[SubscriptionSnapshot] = None
    payment: Optional[PaymentSnapshot] = None
    previous_status: Optional[str] = None
    current_status: Optional[str] = None
    replayed: bool = False


def _history(
    subscription_id: UUID, action: HistoryAction, old: dict, new: dict, reason: str
) -> SubscriptionHistory:
    return SubscriptionHistory(
        subscription_id=subscription_id,
        action=action.value,
        old_value=json.dumps(old, default=str),
        new_value=json.dumps(new, default=str),
        reason=reason,
    )


class SubscriptionActivator:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        redis: Redis,
        audit_logger: AuditLogger,
        *,
        paystack_client: PaystackClient | None = None,
        lock_timeout_seconds: float = 30.0,
        lock_lease_seconds: float = 30.0,
        link_lease_seconds: float = 120.0,
        idempotency_ttl_seconds: int = 300,
    ):
        self._session_maker = session_maker
        self._redis = redis
        self._audit = audit_logger
        self._paystack = paystack_client
        self._idempotency = IdempotencyGuard(redis)
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_lease_seconds = lock_lease_seconds
        self.link_lease_seconds = link_lease_seconds
        self.idempotency_ttl_seconds = idempotency_ttl_seconds

    async def activate(self, request: ActivationRequest) -> ActivationResult:
        lock = DistributedLock(self._redis, lease_seconds=self.lock_lease_seconds)
        resource_key = activation_lock_key(request.subscription_id)
        acquired = await lock.acquire(resource_key, int(self.lock_timeout_seconds * 1000))
        if not acquired:
            logger.info(
                "subscription_activation_lock_timeout",
                subscription_id=str(request.subscription_id),
                source=request.source.value,
            )
            return ActivationResult(success=False, reason=ActivationReason.LOCK_TIMEOUT)

        try:
            outcome = await self._idempotency.with_idempotency(
                activation_idempotency_key(
                    request.subscription_id, request.payment_data.reference
                ),
                self.idempotency_ttl_seconds,
                lambda: self._activate(request, lock),
                ActivationResult,
                should_cache=lambda result: result.success,
            )
        finally:
            await lock.release()

        if outcome.from_cache:
            logger.info(
                "subscription_activation_replayed",
                subscription_id=str(request.subscription_id),
                reference=request.payment_data.reference,
            )
            return outcome.result.model_copy(update={"replayed": True})
        return outcome.result

    async def _activate(
        self, request: ActivationRequest, lock: DistributedLock
    ) -> ActivationResult:
        subscription_id = request.subscription_id
        payment_data = request.payment_data
        now = datetime.now(timezone.utc)

        logger.info(
            "subscription_activation_started",
            subscription_id=str(subscription_id),
            source=request.source.value,
            reference=payment_data.reference,
            amount=payment_data.amount,
        )

        async with self._session_maker() as session, session.begin():
            subscription = (
                await session.execute(
                    select(Subscription)
                    .where(Subscription.id == subscription_id)
                    .with_for_update(of=Subscription)
                )
            ).scalar_one_or_none()

            if subscription is None:
                logger.warning(
                    "subscription_activation_not_found", subscription_id=str(subscription_id)
                )
                return ActivationResult(
                    success=False, reason=ActivationReason.SUBSCRIPTION_NOT_FOUND
                )

            previous_status = subscription.status
            if previous_status not in ACTIVATABLE_STATUSES:
                logger.info(
                    "subscription_activation_invalid_status",
                    subscription_id=str(subscription_id),
                    status=previous_status,
                )
                return ActivationResult(
                    success=False,
                    reason=ActivationReason.INVALID_STATUS,
                    previous_status=previous_status,
                    current_status=previous_status,
                )

            existing_payment = None
            if payment_data.reference:
                existing_payment = (
                    await session.execute(
                        select(Payment).where(
                            Payment.provider_payment_ref == payment_data.reference
                        )
                    )
                ).scalar_one_or_none()

            if existing_payment is not None and existing_payment.subscription_id != subscription.id:
                logger.warning(
                    "subscription_activation_reference_conflict",
                    subscription_id=str(subscription_id),
                    reference=payment_data.reference,
                    linked_subscription_id=str(existing_payment.subscription_id),
                )
                return ActivationResult(
                    success=False,
                    reason=ActivationReason.PAYMENT_REFERENCE_CONFLICT,
                    previous_status=previous_status,
                    current_status=previous_status,
                )

            if previous_status == SubscriptionStatus.ACTIVE.value:
                # Idempotent replay; only the provider link may still be missing.
                payment = existing_payment
                transitioned = False
            else:
                payment = self._record_payment(
                    session, subscription, payment_data, existing_payment, now
                )
                self._apply_activation(subscription, now)
                session.add(
                    _history(
                        subscription.id,
                        HistoryAction.ACTIVATED,
                        {"status": previous_status},
                        {"status": SubscriptionStatus.ACTIVE.value},
                        f"Subscription activated from {describe_source(request.source)}",
                    )
                )
                transitioned = True
            await session.flush()

            user_id = subscription.user_id
            payment_snapshot = PaymentSnapshot.model_validate(payment) if payment else None

        if transitioned:
            logger.info(
                "subscription_activated",
                subscription_id=str(subscription_id),
                source=request.source.value,
                previous_status=previous_status,
            )

        if payment_data.authorization_code and not subscription.provider_subscription_id:
            if await lock.extend(self.link_lease_seconds):
                await self._link_provider_subscription(
                    subscription, payment_data.authorization_code, request.source
                )
            else:
                logger.warning(
                    "subscription_link_skipped_lease_lost",
                    subscription_id=str(subscription_id),
                    lease_seconds=self.lock_lease_seconds,
                )

        if transitioned:
            await self._audit.try_log(
                AuditEventType.SUBSCRIPTION_ACTIVATED,
                user_id=user_id,
                resource_type="subscription",
                resource_id=str(subscription_id),
                correlation_id=payment_data.reference,
                details={
                    "action": HistoryAction.ACTIVATED.value,
                    "source": request.source.value,
                    "reference": payment_data.reference,
                    "previous_status": previous_status,
                },
            )

        return ActivationResult(
            success=True,
            reason=None if transitioned else ActivationReason.ALREADY_ACTIVE,
            subscription=SubscriptionSnapshot.model_validate(subscription),
            payment=payment_snapshot,
            previous_status=previous_status,
            current_status=subscription.status,
        )

    def _record_payment(
        self,
        session: AsyncSession,
        subscription: Subscription,
        payment_data: PaymentData,
        existing: Optional[Payment],
        now: datetime,
    ) -> Payment:
        if existing is not None:
            if existing.status != PaymentStatus.SUCCEEDED.value:
                existing.status = PaymentStatus.SUCCEEDED.value
                existing.provider_payment_id = payment_data.payment_id
                if payment_data.authorization_code:
                    existing.authorization_code = payment_data.authorization_code
            return existing

        reference = payment_data.reference or (
            f"manual_{subscription.id}_{int(now.timestamp() * 1000)}"
        )
        payment = Payment(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=from_subunit(payment_data.amount),
            currency=(payment_data.currency or subscription.plan.currency).upper(),
            status=PaymentStatus.SUCCEEDED.value,
            provider_payment_id=payment_data.payment_id,
            provider_payment_ref=reference,
            authorization_code=payment_data.authorization_code,
            description=f"Initial payment for {subscription.plan.name}",
        )
        session.add(payment)
        return payment

    @staticmethod
    def _apply_activation(subscription: Subscription, now: datetime) -> None:
        period_end = now + relativedelta(months=1)
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        subscription.next_billing_date = period_end
        subscription.cancel_at_period_end = False
        subscription.retry_count = 0
        subscription.grace_period_end = None
        subscription.last_payment_attempt = now

    async def _link_provider_subscription(
        self,
        subscription: Subscription,
        authorization_code: str,
        source: ActivationSource,
    ) -> Optional[str]:
        """
        Best-effort: create the recurring Paystack subscription and store its code.
        Failures are logged; the local activation stands and a later
        reconciliation pass can repair the missing link.
        """
        if self._paystack is None:
            logger.info(
                "subscription_link_skipped_no_client", subscription_id=str(subscription.id)
            )
            return None

        plan = subscription.plan
        customer = subscription.provider_customer_id or subscription.user.email
        try:
            currency = get_paystack_currency(plan.currency)
            paystack_plan = await self._paystack.get_or_create_plan(
                name=plan.name,
                amount_subunits=to_subunit(plan.price),
                interval=plan.interval,
                currency=currency,
                description=plan.description,
            )
            created = await self._paystack.create_subscription(
                customer=customer,
                plan=str(paystack_plan.get("plan_code") or ""),
                authorization=authorization_code,
            )
            code = created.get("subscription_code")
            if not code:
                raise PaymentProviderError("Paystack subscription response missing subscription_code")

            async with self._session_maker() as session, session.begin():
                row = (
                    await session.execute(
                        select(Subscription)
                        .where(Subscription.id == subscription.id)
                        .with_for_update(of=Subscription)
                    )
                ).scalar_one()
                if row.provider_subscription_id:
                    logger.info(
                        "subscription_already_linked",
                        subscription_id=str(subscription.id),
                        provider_subscription_id=row.provider_subscription_id,
                    )
                    subscription.provider_subscription_id = row.provider_subscription_id
                    return row.provider_subscription_id
                row.provider_subscription_id = str(code)
                session.add(
                    _history(
                        subscription.id,
                        HistoryAction.PROVIDER_LINKED,
                        {"provider_subscription_id": None},
                        {"provider_subscription_id": str(code)},
                        f"Paystack subscription created after activation from {describe_source(source)}",
                    )
                )
        except (PaymentProviderError, SQLAlchemyError) as exc:
            logger.error(
                "subscription_link_failed",
                subscription_id=str(subscription.id),
                error=str(exc),
            )
            return None

        subscription.provider_subscription_id = str(code)
        logger.info(
            "subscription_linked",
            subscription_id=str(subscription.id),
            provider_subscription_id=str(code),
        )
        await self._audit.try_log(
            AuditEventType.SUBSCRIPTION_LINKED,
            user_id=subscription.user_id,
            resource_type="subscription",
            resource_id=str(subscription.id),
            details={"provider_subscription_id": str(code), "source": source.value},
        )
        return str(code)
