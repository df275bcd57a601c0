"""Webhook handler implementation for Paystack billing events."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Awaitable, Callable

from fastapi import HTTPException, Request

from . import paystack_shared as shared
from .engine import BillingEngine, PaymentOutcome, authorization_code_from_charge
from .subscription_matching import PaymentCorrelation


class WebhookHandler:
    """
    Paystack Webhook Handler.

    Returns `{"status": ...}`; `retry` means the event could not be processed
    now (lock contention) and the HTTP layer answers 503 so Paystack redelivers.
    """

    def __init__(self, engine: BillingEngine):
        self.engine = engine

    async def handle(self, request: Request, payload: bytes, signature: str) -> dict[str, str]:
        """Verify and process webhook."""
        content_type = request.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            shared.logger.warning("paystack_webhook_invalid_content_type", content_type=content_type)
            raise HTTPException(400, "Unsupported media type: expected application/json")

        if not self.verify_signature(payload, signature):
            raise HTTPException(401, "Invalid signature")

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            shared.logger.error("paystack_webhook_invalid_json", payload_len=len(payload))
            raise HTTPException(400, "Invalid JSON payload")

        if not isinstance(event, dict):
            raise HTTPException(400, "Invalid JSON payload")
        return await self.dispatch(event)

    async def dispatch(self, event: dict[str, Any]) -> dict[str, str]:
        event_type = event.get("event")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}

        shared.logger.info(
            "paystack_webhook_received",
            paystack_event=event_type,
            reference=data.get("reference"),
        )

        handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, str]]]] = {
            "charge.success": self._handle_charge_success,
            "subscription.disable": self._handle_subscription_disable,
        }
        handler = handlers.get(str(event_type))
        if handler is None:
            shared.logger.info("paystack_webhook_ignored", paystack_event=event_type)
            return {"status": "ignored"}
        return await handler(data)

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        """Verify Paystack webhook signature using HMAC-SHA512."""
        if not signature:
            shared.logger.warning("paystack_webhook_missing_signature")
            return False

        secret_key = self.engine.settings.PAYSTACK_SECRET_KEY
        if not secret_key:
            shared.logger.error("paystack_secret_key_not_configured")
            return False

        expected = hmac.new(secret_key.encode(), payload, hashlib.sha512).hexdigest()
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            shared.logger.warning(
                "paystack_webhook_invalid_signature", provided_sig=signature[:8] + "..."
            )
        return is_valid

    async def _handle_charge_success(self, data: dict[str, Any]) -> dict[str, str]:
        """Primary activation point."""
        if data.get("status") != "success":
            shared.logger.info(
                "paystack_charge_not_successful",
                reference=data.get("reference"),
                status=data.get("status"),
            )
            return {"status": "ignored"}

        correlation = PaymentCorrelation.from_paystack_charge(data)
        if not correlation.reference:
            shared.logger.warning("paystack_charge_missing_reference")
            return {"status": "ignored"}

        shared.logger.info(
            "paystack_webhook_data_parsed",
            reference=correlation.reference,
            email_hash=shared.email_hash(correlation.user_email),
            metadata_type=correlation.metadata.get("type"),
        )

        result = await self.engine.process_payment(
            correlation,
            explicit_subscription_id=correlation.setup_subscription_id(),
            source=shared.ActivationSource.WEBHOOK,
            authorization_code=authorization_code_from_charge(data),
        )

        if result.outcome in (PaymentOutcome.ACTIVATED, PaymentOutcome.DUPLICATE):
            return {"status": "processed", "outcome": result.outcome.value}
        return {"status": result.outcome.value}

    async def _handle_subscription_disable(self, data: dict[str, Any]) -> dict[str, str]:
        subscription_code = data.get("subscription_code")
        if not subscription_code:
            shared.logger.warning("subscription_disable_missing_code")
            return {"status": "ignored"}

        result = await self.engine.handle_provider_disable(str(subscription_code))
        if result.success:
            return {"status": "processed"}
        if result.message == "lock_timeout":
            return {"status": "retry"}
        return {"status": "ignored"}
