"""
Tests for Paystack webhook verification and event dispatch.
"""

import hashlib
import hmac
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from billing_engine.models.billing import Subscription
from billing_engine.modules.billing.domain.billing.cancellation import (
    LOCK_TIMEOUT_MESSAGE,
    CancellationResult,
)
from billing_engine.modules.billing.domain.billing.engine import (
    PaymentOutcome,
    PaymentProcessingResult,
)
from billing_engine.modules.billing.domain.billing.paystack_webhook_impl import WebhookHandler
from billing_engine.modules.governance.domain.security.audit_log import AuditLog

SECRET = "sk_test_webhook_secret"


def sign(payload: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


def charge_event(subscription=None, user_email=None, amount=2900, status="success", **extra):
    metadata = {}
    if subscription is not None:
        metadata = {"type": "subscription_setup", "subscription_id": str(subscription.id)}
    data = {
        "id": 302961,
        "reference": extra.pop("reference", "ref_webhook"),
        "status": status,
        "amount": amount,
        "currency": "NGN",
        "customer": {"email": user_email},
        "metadata": json.dumps(metadata),
        "authorization": {"authorization_code": "AUTH_x", "reusable": True},
    }
    data.update(extra)
    return {"event": "charge.success", "data": data}


def mock_engine(**methods):
    engine = MagicMock()
    engine.settings = SimpleNamespace(PAYSTACK_SECRET_KEY=SECRET)
    for name, value in methods.items():
        setattr(engine, name, AsyncMock(return_value=value))
    return engine


def test_signature_verification():
    handler = WebhookHandler(mock_engine())
    payload = b'{"event": "charge.success"}'

    assert handler.verify_signature(payload, sign(payload))
    assert not handler.verify_signature(payload, sign(payload, "other_secret"))
    assert not handler.verify_signature(payload, "")


def test_signature_requires_configured_secret():
    engine = mock_engine()
    engine.settings = SimpleNamespace(PAYSTACK_SECRET_KEY=None)
    payload = b"{}"

    assert not WebhookHandler(engine).verify_signature(payload, sign(payload))


@pytest.mark.asyncio
async def test_unhandled_events_are_ignored():
    engine = mock_engine(process_payment=None)

    result = await WebhookHandler(engine).dispatch({"event": "invoice.create", "data": {}})

    assert result == {"status": "ignored"}
    engine.process_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_unsuccessful_charge_is_ignored():
    engine = mock_engine(process_payment=None)

    result = await WebhookHandler(engine).dispatch(charge_event(status="failed"))

    assert result == {"status": "ignored"}
    engine.process_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_charge_success_passes_setup_subscription_and_authorization(factory):
    subscription = await factory.subscription(await factory.user(), await factory.plan())
    engine = mock_engine(
        process_payment=PaymentProcessingResult(
            outcome=PaymentOutcome.ACTIVATED, reference="ref_webhook"
        )
    )

    result = await WebhookHandler(engine).dispatch(charge_event(subscription))

    assert result == {"status": "processed", "outcome": "activated"}
    kwargs = engine.process_payment.await_args.kwargs
    assert kwargs["explicit_subscription_id"] == subscription.id
    assert kwargs["authorization_code"] == "AUTH_x"


@pytest.mark.asyncio
async def test_lock_contention_maps_to_retry():
    engine = mock_engine(
        process_payment=PaymentProcessingResult(
            outcome=PaymentOutcome.RETRY, reference="ref_webhook"
        )
    )

    result = await WebhookHandler(engine).dispatch(charge_event())

    assert result == {"status": "retry"}


@pytest.mark.asyncio
async def test_subscription_disable_dispatch():
    engine = mock_engine(handle_provider_disable=CancellationResult(success=True))

    result = await WebhookHandler(engine).dispatch(
        {"event": "subscription.disable", "data": {"subscription_code": "SUB_1"}}
    )

    assert result == {"status": "processed"}
    engine.handle_provider_disable.assert_awaited_once_with("SUB_1")


@pytest.mark.asyncio
async def test_subscription_disable_lock_contention_maps_to_retry():
    engine = mock_engine(
        handle_provider_disable=CancellationResult(success=False, message=LOCK_TIMEOUT_MESSAGE)
    )

    result = await WebhookHandler(engine).dispatch(
        {"event": "subscription.disable", "data": {"subscription_code": "SUB_1"}}
    )

    assert result == {"status": "retry"}


@pytest.mark.asyncio
async def test_charge_success_activates_matched_subscription(billing_engine, factory, session_maker):
    user = await factory.user()
    subscription = await factory.subscription(user, await factory.plan("29.00"))
    handler = WebhookHandler(billing_engine)

    first = await handler.dispatch(charge_event(user_email=user.email))
    redelivery = await handler.dispatch(charge_event(user_email=user.email))

    assert first == {"status": "processed", "outcome": "activated"}
    assert redelivery == {"status": "processed", "outcome": "duplicate"}
    async with session_maker() as session:
        stored = await session.get(Subscription, subscription.id)
    assert stored.status == "active"


@pytest.mark.asyncio
async def test_unmatched_charge_is_audited(billing_engine, session_maker):
    handler = WebhookHandler(billing_engine)

    result = await handler.dispatch(charge_event(user_email="stranger@example.com"))

    assert result == {"status": "unmatched"}
    async with session_maker() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.event_type == "billing.payment_unmatched"
    assert entry.correlation_id == "ref_webhook"
    assert entry.success is False
