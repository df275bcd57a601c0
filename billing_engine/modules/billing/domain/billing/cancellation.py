"""
Subscription Cancellation

- `incomplete`: nothing was paid, cancel immediately.
- `active` / `past_due`: disable the Paystack subscription (best effort) and
  set `cancel_at_period_end`; status stays so access runs to period end.

Runs under the per-user cancellation lock, then the per-subscription
activation lock, so a cancellation never interleaves with an activation of
the same subscription.
"""

from __future__ import annotations

import json
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models.billing import Subscription, SubscriptionHistory
from billing_engine.modules.governance.domain.security.audit_log import (
    AuditEventType,
    AuditLogger,
)
from billing_engine.shared.core.exceptions import PaymentProviderError

from .activation import SubscriptionSnapshot
from .distributed_lock import DistributedLock, activation_lock_key, cancellation_lock_key
from .paystack_client_impl import PaystackClient
from .paystack_shared import HistoryAction, SubscriptionStatus

logger = structlog.get_logger()

CANCELLABLE_STATUSES = (
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)
LOCK_TIMEOUT_MESSAGE = "lock_timeout"
NO_SUBSCRIPTION_MESSAGE = "No active subscription found"


class CancellationResult(BaseModel):
    success: bool
    subscription: Optional[SubscriptionSnapshot] = None
    message: Optional[str] = None
    immediate: bool = False


class SubscriptionCanceller:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        redis: Redis,
        audit_logger: AuditLogger,
        *,
        paystack_client: PaystackClient | None = None,
        lock_timeout_seconds: float = 30.0,
        lock_lease_seconds: float = 30.0,
    ):
        self._session_maker = session_maker
        self._redis = redis
        self._audit = audit_logger
        self._paystack = paystack_client
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_lease_seconds = lock_lease_seconds

    def _new_lock(self) -> DistributedLock:
        return DistributedLock(self._redis, lease_seconds=self.lock_lease_seconds)

    async def cancel(self, user_id: UUID) -> CancellationResult:
        timeout_ms = int(self.lock_timeout_seconds * 1000)
        async with self._new_lock().hold(cancellation_lock_key(user_id), timeout_ms) as acquired:
            if not acquired:
                logger.info("subscription_cancel_lock_timeout", user_id=str(user_id))
                return CancellationResult(success=False, message=LOCK_TIMEOUT_MESSAGE)

            subscription_id = await self._find_cancellable(user_id)
            if subscription_id is None:
                logger.info("subscription_cancel_none_found", user_id=str(user_id))
                return CancellationResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

            async with self._new_lock().hold(
                activation_lock_key(subscription_id), timeout_ms
            ) as subscription_locked:
                if not subscription_locked:
                    logger.info(
                        "subscription_cancel_lock_timeout",
                        user_id=str(user_id),
                        subscription_id=str(subscription_id),
                    )
                    return CancellationResult(success=False, message=LOCK_TIMEOUT_MESSAGE)
                return await self._cancel(user_id, subscription_id)

    async def handle_provider_disable(self, provider_subscription_id: str) -> CancellationResult:
        """
        Paystack disabled the recurring subscription (`subscription.disable`).
        The paid period is honoured: only `cancel_at_period_end` is set.
        """
        async with self._session_maker() as session:
            subscription_id = (
                await session.execute(
                    select(Subscription.id).where(
                        Subscription.provider_subscription_id == provider_subscription_id
                    )
                )
            ).scalar_one_or_none()

        if subscription_id is None:
            logger.warning(
                "subscription_disable_not_found", provider_subscription_id=provider_subscription_id
            )
            return CancellationResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        timeout_ms = int(self.lock_timeout_seconds * 1000)
        async with self._new_lock().hold(
            activation_lock_key(subscription_id), timeout_ms
        ) as acquired:
            if not acquired:
                return CancellationResult(success=False, message=LOCK_TIMEOUT_MESSAGE)

            subscription = await self._load(subscription_id)
            if subscription is None:
                return CancellationResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)
            if subscription.status not in CANCELLABLE_STATUSES or subscription.cancel_at_period_end:
                return CancellationResult(
                    success=True, subscription=SubscriptionSnapshot.model_validate(subscription)
                )
            return await self._cancel_at_period_end(
                subscription.user_id, subscription, reason="Paystack subscription disabled"
            )

    async def _find_cancellable(self, user_id: UUID) -> Optional[UUID]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Subscription.id)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status.in_(CANCELLABLE_STATUSES),
                )
                .order_by(Subscription.created_at.desc())
            )
            ids = list(result.scalars().all())

        if len(ids) > 1:
            logger.warning(
                "subscription_cancel_multiple_candidates",
                user_id=str(user_id),
                subscription_ids=[str(i) for i in ids],
            )
        return ids[0] if ids else None

    async def _load(self, subscription_id: UUID) -> Optional[Subscription]:
        async with self._session_maker() as session:
            return (
                await session.execute(select(Subscription).where(Subscription.id == subscription_id))
            ).scalar_one_or_none()

    async def _cancel(self, user_id: UUID, subscription_id: UUID) -> CancellationResult:
        subscription = await self._load(subscription_id)
        if subscription is None or subscription.status not in CANCELLABLE_STATUSES:
            return CancellationResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        if subscription.status == SubscriptionStatus.INCOMPLETE.value:
            return await self._cancel_immediately(user_id, subscription)

        if subscription.provider_subscription_id:
            await self._disable_provider_subscription(subscription)
        return await self._cancel_at_period_end(user_id, subscription)

    async def _cancel_immediately(
        self, user_id: UUID, subscription: Subscription
    ) -> CancellationResult:
        async with self._session_maker() as session, session.begin():
            row = await self._lock_row(session, subscription.id)
            previous_status = row.status
            row.status = SubscriptionStatus.CANCELED.value
            row.cancel_at_period_end = False
            session.add(
                SubscriptionHistory(
                    subscription_id=row.id,
                    action=HistoryAction.CANCELLED.value,
                    old_value=json.dumps({"status": previous_status}),
                    new_value=json.dumps({"status": SubscriptionStatus.CANCELED.value}),
                    reason="User cancelled incomplete subscription",
                )
            )
            await session.flush()
            snapshot = SubscriptionSnapshot.model_validate(row)

        logger.info(
            "subscription_cancelled_immediately",
            user_id=str(user_id),
            subscription_id=str(subscription.id),
        )
        await self._audit.try_log(
            AuditEventType.SUBSCRIPTION_CANCELLED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=str(subscription.id),
            details={"action": "cancelled_incomplete", "immediate_cancel": True},
        )
        return CancellationResult(success=True, subscription=snapshot, immediate=True)

    async def _cancel_at_period_end(
        self,
        user_id: UUID,
        subscription: Subscription,
        reason: str = "User requested cancellation",
    ) -> CancellationResult:
        async with self._session_maker() as session, session.begin():
            row = await self._lock_row(session, subscription.id)
            previous_flag = bool(row.cancel_at_period_end)
            row.cancel_at_period_end = True
            session.add(
                SubscriptionHistory(
                    subscription_id=row.id,
                    action=HistoryAction.CANCELLED.value,
                    old_value=json.dumps({"cancel_at_period_end": previous_flag}),
                    new_value=json.dumps({"cancel_at_period_end": True}),
                    reason=reason,
                )
            )
            await session.flush()
            snapshot = SubscriptionSnapshot.model_validate(row)

        logger.info(
            "subscription_cancel_scheduled",
            user_id=str(user_id),
            subscription_id=str(subscription.id),
            current_period_end=str(snapshot.current_period_end),
        )
        await self._audit.try_log(
            AuditEventType.SUBSCRIPTION_UPDATED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=str(subscription.id),
            details={"action": "cancelled", "cancel_at_period_end": True, "reason": reason},
        )
        return CancellationResult(success=True, subscription=snapshot)

    async def _disable_provider_subscription(self, subscription: Subscription) -> None:
        """Local state is authoritative; a processor failure is logged and skipped."""
        if self._paystack is None:
            logger.warning(
                "subscription_cancel_provider_skipped_no_client",
                subscription_id=str(subscription.id),
            )
            return
        try:
            await self._paystack.disable_subscription(str(subscription.provider_subscription_id))
        except PaymentProviderError as exc:
            logger.error(
                "subscription_cancel_provider_failed",
                subscription_id=str(subscription.id),
                provider_subscription_id=subscription.provider_subscription_id,
                error=str(exc),
            )

    @staticmethod
    async def _lock_row(session: AsyncSession, subscription_id: UUID) -> Subscription:
        return (
            await session.execute(
                select(Subscription)
                .where(Subscription.id == subscription_id)
                .with_for_update(of=Subscription)
            )
        ).scalar_one()
