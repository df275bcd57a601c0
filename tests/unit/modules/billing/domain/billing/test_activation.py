"""
Tests for the activation state machine.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select

from billing_engine.models.billing import Payment, Subscription, SubscriptionHistory
from billing_engine.modules.billing.domain.billing.activation import (
    ActivationReason,
    ActivationRequest,
    PaymentData,
    SubscriptionActivator,
    provider_link_lease_seconds,
)
from billing_engine.modules.billing.domain.billing.distributed_lock import (
    DistributedLock,
    activation_lock_key,
)
from billing_engine.modules.billing.domain.billing.paystack_shared import ActivationSource
from billing_engine.modules.governance.domain.security.audit_log import (
    AuditEventType,
    AuditLog,
)
from billing_engine.shared.core.exceptions import PaymentProviderError


def activation_request(subscription_id, reference="ref_2900", **payment) -> ActivationRequest:
    data = {"reference": reference, "payment_id": "4099", "amount": 2900, "currency": "NGN"}
    data.update(payment)
    return ActivationRequest(
        subscription_id=subscription_id,
        payment_data=PaymentData(**data),
        source=ActivationSource.WEBHOOK,
    )


@pytest.fixture
def activator(session_maker, redis, audit_logger) -> SubscriptionActivator:
    return SubscriptionActivator(
        session_maker, redis, audit_logger, lock_timeout_seconds=1, lock_lease_seconds=5
    )


@pytest.fixture
def paystack():
    client = AsyncMock()
    client.get_or_create_plan.return_value = {"plan_code": "PLN_monthly"}
    client.create_subscription.return_value = {"subscription_code": "SUB_abc123"}
    return client


async def load_subscription(session_maker, subscription_id) -> Subscription:
    async with session_maker() as session:
        return await session.get(Subscription, subscription_id)


async def count(session_maker, model, *criteria) -> int:
    async with session_maker() as session:
        return (
            await session.execute(select(func.count()).select_from(model).where(*criteria))
        ).scalar_one()


async def history_actions(session_maker, subscription_id) -> list[str]:
    async with session_maker() as session:
        rows = await session.execute(
            select(SubscriptionHistory.action).where(
                SubscriptionHistory.subscription_id == subscription_id
            )
        )
        return sorted(rows.scalars().all())


@pytest.mark.asyncio
async def test_activates_incomplete_subscription(activator, factory, session_maker):
    subscription = await factory.subscription(await factory.user(), await factory.plan("29.00"))

    result = await activator.activate(activation_request(subscription.id))

    assert result.success
    assert result.reason is None
    assert result.previous_status == "incomplete"
    assert result.current_status == "active"
    assert not result.replayed
    assert result.payment.provider_payment_ref == "ref_2900"
    assert str(result.payment.amount) == "29.00"

    stored = await load_subscription(session_maker, subscription.id)
    assert stored.status == "active"
    assert stored.current_period_end == stored.current_period_start + relativedelta(months=1)
    assert stored.next_billing_date == stored.current_period_end
    assert stored.cancel_at_period_end is False
    assert stored.retry_count == 0

    async with session_maker() as session:
        history = (
            await session.execute(
                select(SubscriptionHistory).where(
                    SubscriptionHistory.subscription_id == subscription.id
                )
            )
        ).scalar_one()
        payment = (await session.execute(select(Payment))).scalar_one()
    assert history.action == "activated"
    assert history.reason == "Subscription activated from Paystack webhook"
    assert payment.status == "succeeded"
    assert payment.currency == "NGN"
    assert payment.description == "Initial payment for Plan 29.00"

    assert await count(
        session_maker, AuditLog, AuditLog.event_type == AuditEventType.SUBSCRIPTION_ACTIVATED.value
    ) == 1


@pytest.mark.asyncio
async def test_repeated_request_is_replayed(activator, factory, session_maker):
    subscription = await factory.subscription(await factory.user(), await factory.plan())

    first = await activator.activate(activation_request(subscription.id))
    second = await activator.activate(activation_request(subscription.id))

    assert first.success and not first.replayed
    assert second.success and second.replayed
    assert second.payment.id == first.payment.id
    assert await count(session_maker, Payment) == 1
    assert await history_actions(session_maker, subscription.id) == ["activated"]


@pytest.mark.asyncio
async def test_active_subscription_is_a_no_op(activator, factory, session_maker):
    subscription = await factory.subscription(
        await factory.user(), await factory.plan(), status="active"
    )

    result = await activator.activate(activation_request(subscription.id, reference="ref_new"))

    assert result.success
    assert result.reason == ActivationReason.ALREADY_ACTIVE
    assert result.previous_status == result.current_status == "active"
    assert result.payment is None
    assert await count(session_maker, Payment) == 0
    assert await history_actions(session_maker, subscription.id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["canceled", "past_due"])
async def test_other_statuses_are_rejected_without_writes(
    activator, factory, session_maker, status
):
    subscription = await factory.subscription(
        await factory.user(), await factory.plan(), status=status
    )

    result = await activator.activate(activation_request(subscription.id))

    assert not result.success
    assert result.reason == ActivationReason.INVALID_STATUS
    assert result.current_status == status
    assert (await load_subscription(session_maker, subscription.id)).status == status
    assert await count(session_maker, Payment) == 0
    assert await history_actions(session_maker, subscription.id) == []


@pytest.mark.asyncio
async def test_failure_is_not_cached(activator, factory, redis):
    subscription = await factory.subscription(
        await factory.user(), await factory.plan(), status="canceled"
    )

    await activator.activate(activation_request(subscription.id))

    assert await redis.get(f"activate_subscription:{subscription.id}:ref_2900") is None


@pytest.mark.asyncio
async def test_missing_subscription(activator):
    result = await activator.activate(activation_request(uuid4()))

    assert not result.success
    assert result.reason == ActivationReason.SUBSCRIPTION_NOT_FOUND


@pytest.mark.asyncio
async def test_lock_timeout_returns_retryable_outcome(
    session_maker, redis, audit_logger, factory
):
    subscription = await factory.subscription(await factory.user(), await factory.plan())
    holder = DistributedLock(redis, lease_seconds=10)
    assert await holder.acquire(activation_lock_key(subscription.id), timeout_ms=100)
    activator = SubscriptionActivator(
        session_maker, redis, audit_logger, lock_timeout_seconds=0.2
    )

    try:
        result = await activator.activate(activation_request(subscription.id))
    finally:
        await holder.release()

    assert not result.success
    assert result.reason == ActivationReason.LOCK_TIMEOUT
    assert (await load_subscription(session_maker, subscription.id)).status == "incomplete"


@pytest.mark.asyncio
async def test_lock_is_released_after_activation(activator, factory, redis):
    subscription = await factory.subscription(await factory.user(), await factory.plan())

    await activator.activate(activation_request(subscription.id))

    assert await redis.get(f"lock:{activation_lock_key(subscription.id)}") is None


@pytest.mark.asyncio
async def test_reference_owned_by_other_subscription(activator, factory, session_maker):
    plan = await factory.plan()
    other = await factory.subscription(await factory.user(), plan)
    subscription = await factory.subscription(await factory.user(), plan)
    await activator.activate(activation_request(other.id, reference="ref_shared"))

    result = await activator.activate(activation_request(subscription.id, reference="ref_shared"))

    assert not result.success
    assert result.reason == ActivationReason.PAYMENT_REFERENCE_CONFLICT
    assert (await load_subscription(session_maker, subscription.id)).status == "incomplete"


@pytest.mark.asyncio
async def test_pending_payment_row_is_completed(activator, factory, session_maker):
    subscription = await factory.subscription(await factory.user(), await factory.plan())
    async with session_maker() as session, session.begin():
        session.add(
            Payment(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=Decimal("29.00"),
                currency="NGN",
                status="pending",
                provider_payment_ref="ref_2900",
            )
        )

    result = await activator.activate(activation_request(subscription.id))

    assert result.success
    assert result.payment.status == "succeeded"
    assert result.payment.provider_payment_id == "4099"
    assert await count(session_maker, Payment) == 1


@pytest.mark.asyncio
async def test_manual_activation_without_reference(activator, factory):
    subscription = await factory.subscription(await factory.user(), await factory.plan())

    result = await activator.activate(
        ActivationRequest(
            subscription_id=subscription.id,
            payment_data=PaymentData(amount=2900),
            source=ActivationSource.MANUAL,
        )
    )

    assert result.success
    assert result.payment.provider_payment_ref.startswith(f"manual_{subscription.id}_")
    assert result.payment.currency == "NGN"


@pytest.mark.asyncio
async def test_links_paystack_subscription(
    session_maker, redis, audit_logger, factory, paystack
):
    user = await factory.user()
    subscription = await factory.subscription(user, await factory.plan("29.00"))
    activator = SubscriptionActivator(
        session_maker, redis, audit_logger, paystack_client=paystack
    )

    result = await activator.activate(
        activation_request(subscription.id, authorization_code="AUTH_abc")
    )

    assert result.success
    assert result.subscription.provider_subscription_id == "SUB_abc123"
    paystack.get_or_create_plan.assert_awaited_once()
    assert paystack.get_or_create_plan.await_args.kwargs["amount_subunits"] == 2900
    paystack.create_subscription.assert_awaited_once_with(
        customer=user.email, plan="PLN_monthly", authorization="AUTH_abc"
    )
    stored = await load_subscription(session_maker, subscription.id)
    assert stored.provider_subscription_id == "SUB_abc123"
    assert await history_actions(session_maker, subscription.id) == [
        "activated",
        "provider_linked",
    ]
    assert await count(
        session_maker, AuditLog, AuditLog.event_type == AuditEventType.SUBSCRIPTION_LINKED.value
    ) == 1


@pytest.mark.asyncio
async def test_link_failure_keeps_activation(
    session_maker, redis, audit_logger, factory, paystack
):
    subscription = await factory.subscription(await factory.user(), await factory.plan())
    paystack.create_subscription.side_effect = PaymentProviderError("paystack down")
    activator = SubscriptionActivator(
        session_maker, redis, audit_logger, paystack_client=paystack
    )

    result = await activator.activate(
        activation_request(subscription.id, authorization_code="AUTH_abc")
    )

    assert result.success
    stored = await load_subscription(session_maker, subscription.id)
    assert stored.status == "active"
    assert stored.provider_subscription_id is None
    assert await history_actions(session_maker, subscription.id) == ["activated"]


@pytest.mark.asyncio
async def test_active_subscription_without_link_is_linked(
    session_maker, redis, audit_logger, factory, paystack
):
    subscription = await factory.subscription(
        await factory.user(), await factory.plan(), status="active"
    )
    activator = SubscriptionActivator(
        session_maker, redis, audit_logger, paystack_client=paystack
    )

    result = await activator.activate(
        activation_request(subscription.id, authorization_code="AUTH_abc")
    )

    assert result.reason == ActivationReason.ALREADY_ACTIVE
    assert result.subscription.provider_subscription_id == "SUB_abc123"
    assert await history_actions(session_maker, subscription.id) == ["provider_linked"]


@pytest.mark.asyncio
async def test_linked_subscription_is_not_relinked(
    session_maker, redis, audit_logger, factory, paystack
):
    subscription = await factory.subscription(
        await factory.user(), await factory.plan(), provider_subscription_id="SUB_existing"
    )
    activator = SubscriptionActivator(
        session_maker, redis, audit_logger, paystack_client=paystack
    )

    result = await activator.activate(
        activation_request(subscription.id, authorization_code="AUTH_abc")
    )

    assert result.success
    paystack.create_subscription.assert_not_awaited()


def test_link_lease_covers_paystack_retries():
    # three calls, each 3 attempts of 30s plus two backoff waits of at most 10s
    assert provider_link_lease_seconds(30.0, 3) == 335.0
    assert provider_link_lease_seconds(10.0, 0) == 35.0


@pytest.mark.asyncio
async def test_slow_link_outlasting_lease_is_not_duplicated(
    session_maker, redis, audit_logger, factory, paystack
):
    subscription = await factory.subscription(await factory.user(), await factory.plan())

    async def slow_create_subscription(**kwargs):
        await asyncio.sleep(1.5)
        return {"subscription_code": "SUB_slow"}

    paystack.create_subscription.side_effect = slow_create_subscription
    activator = SubscriptionActivator(
        session_maker,
        redis,
        audit_logger,
        paystack_client=paystack,
        lock_timeout_seconds=5,
        lock_lease_seconds=1,
        link_lease_seconds=10,
    )
    request = activation_request(subscription.id, authorization_code="AUTH_abc")

    results = await asyncio.gather(activator.activate(request), activator.activate(request))

    assert paystack.create_subscription.await_count == 1
    assert all(result.success for result in results)
    assert sorted(result.replayed for result in results) == [False, True]
    stored = await load_subscription(session_maker, subscription.id)
    assert stored.provider_subscription_id == "SUB_slow"
    assert await history_actions(session_maker, subscription.id) == [
        "activated",
        "provider_linked",
    ]


@pytest.mark.asyncio
async def test_lost_lease_skips_paystack_link(
    session_maker, redis, audit_logger, factory, paystack, monkeypatch
):
    subscription = await factory.subscription(await factory.user(), await factory.plan())
    monkeypatch.setattr(DistributedLock, "extend", AsyncMock(return_value=False))
    activator = SubscriptionActivator(
        session_maker, redis, audit_logger, paystack_client=paystack
    )

    result = await activator.activate(
        activation_request(subscription.id, authorization_code="AUTH_abc")
    )

    assert result.success
    assert result.current_status == "active"
    paystack.get_or_create_plan.assert_not_awaited()
    paystack.create_subscription.assert_not_awaited()
    stored = await load_subscription(session_maker, subscription.id)
    assert stored.provider_subscription_id is None
