"""Paystack API client implementation."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from billing_engine.shared.core.config import Settings
from billing_engine.shared.core.exceptions import ConfigurationError, PaymentProviderError
from billing_engine.shared.core.retry import tenacity_retry

from . import paystack_shared as shared


class PaystackClient:
    """Async wrapper for the Paystack operations the billing engine needs."""

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        max_retries: int = 3,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not secret_key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")

        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0)
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> "PaystackClient":
        return cls(
            settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PAYSTACK_TIMEOUT_SECONDS,
            max_retries=settings.PAYSTACK_MAX_RETRIES,
            http_client=http_client,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        return await self._client.request(
            method,
            f"{self.base_url}/{endpoint}",
            headers=self.headers,
            json=data,
            params=params,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        send = tenacity_retry("external_api", max_attempts=self.max_retries)(self._send)
        try:
            response = await send(method, endpoint, data, params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            shared.logger.error("paystack_api_error", endpoint=endpoint, error=str(exc))
            raise PaymentProviderError(
                f"Paystack request failed: {endpoint}", details={"error": str(exc)}
            ) from exc
        except ValueError as exc:
            shared.logger.error("paystack_invalid_json", endpoint=endpoint)
            raise PaymentProviderError("Invalid Paystack response payload") from exc

        if not isinstance(payload, dict):
            raise PaymentProviderError("Invalid Paystack response payload type")
        if payload.get("status") is False:
            message = str(payload.get("message") or "unknown error")
            shared.logger.warning("paystack_request_rejected", endpoint=endpoint, message=message)
            raise PaymentProviderError(
                f"Paystack rejected request: {message}", details={"endpoint": endpoint}
            )
        return payload

    @staticmethod
    def _data(payload: dict[str, Any]) -> dict[str, Any]:
        data = payload.get("data")
        if not isinstance(data, dict):
            raise PaymentProviderError("Paystack response is missing a data object")
        return data

    async def verify_transaction(self, reference: str) -> dict[str, Any]:
        """Verify transaction status; returns the transaction object."""
        return self._data(await self._request("GET", f"transaction/verify/{reference}"))

    async def list_plans(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "plan")
        plans = payload.get("data")
        return [p for p in plans if isinstance(p, dict)] if isinstance(plans, list) else []

    async def create_plan(
        self,
        name: str,
        amount_subunits: int,
        interval: str,
        currency: str,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": name,
            "amount": amount_subunits,
            "interval": interval,
            "currency": currency,
        }
        if description:
            data["description"] = description
        return self._data(await self._request("POST", "plan", data))

    async def get_or_create_plan(
        self,
        name: str,
        amount_subunits: int,
        interval: str,
        currency: str,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        """Reuse a plan with the same name, amount and interval when one exists."""
        try:
            for plan in await self.list_plans():
                if (
                    plan.get("name") == name
                    and plan.get("amount") == amount_subunits
                    and plan.get("interval") == interval
                ):
                    return plan
        except PaymentProviderError as exc:
            shared.logger.warning("paystack_plan_list_failed", error=str(exc))

        return await self.create_plan(name, amount_subunits, interval, currency, description)

    async def create_subscription(
        self,
        customer: str,
        plan: str,
        authorization: Optional[str] = None,
        start_date: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create a subscription; the result carries `subscription_code`."""
        data: dict[str, Any] = {"customer": customer, "plan": plan}
        if authorization:
            data["authorization"] = authorization
        if start_date:
            data["start_date"] = start_date
        return self._data(await self._request("POST", "subscription", data))

    async def fetch_subscription(self, code_or_token: str) -> dict[str, Any]:
        """Fetch subscription details."""
        return self._data(await self._request("GET", f"subscription/{code_or_token}"))

    async def disable_subscription(self, code: str, token: Optional[str] = None) -> dict[str, Any]:
        """Cancel a subscription. Paystack needs the email token; look it up if absent."""
        if not token:
            token = self._data_token(await self.fetch_subscription(code))
        return await self._request("POST", "subscription/disable", {"code": code, "token": token})

    @staticmethod
    def _data_token(subscription: dict[str, Any]) -> str:
        token = subscription.get("email_token")
        if not isinstance(token, str) or not token:
            raise PaymentProviderError("Paystack subscription has no email token")
        return token
