"""
Paystack currency configuration and subunit conversion.

Every currency Paystack settles in uses 100 subunits per major unit
(kobo, pesewas, cents). Amounts arriving from the processor are subunits;
amounts persisted on payments and plans are major units.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

import structlog

from billing_engine.shared.core.config import get_settings

logger = structlog.get_logger()

PAYSTACK_SUPPORTED_CURRENCIES: tuple[str, ...] = ("NGN", "GHS", "ZAR", "USD", "KES")
SUBUNITS_PER_UNIT = Decimal("100")
_CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Coerce a numeric value to Decimal via its string form (no float artefacts)."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc


def is_paystack_currency_supported(currency: str | None) -> bool:
    return bool(currency) and str(currency).strip().upper() in PAYSTACK_SUPPORTED_CURRENCIES


def get_paystack_currency(plan_currency: str | None) -> str:
    """
    Resolve the currency to charge with Paystack for a plan currency.
    Unsupported currencies fall back to the configured default, then USD.
    """
    normalized = str(plan_currency or "").strip().upper()
    if normalized in PAYSTACK_SUPPORTED_CURRENCIES:
        return normalized

    default_currency = str(get_settings().PAYSTACK_DEFAULT_CURRENCY or "").strip().upper()
    if default_currency in PAYSTACK_SUPPORTED_CURRENCIES:
        logger.info(
            "paystack_currency_fallback",
            plan_currency=plan_currency,
            resolved_currency=default_currency,
        )
        return default_currency
    return "USD"


def to_subunit(amount: Any) -> int:
    """Major units -> processor subunits, rounded half-up to a whole subunit."""
    subunits = (to_decimal(amount) * SUBUNITS_PER_UNIT).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(subunits)


def from_subunit(amount: Any) -> Decimal:
    """Processor subunits -> major units with two decimal places."""
    return (to_decimal(amount) / SUBUNITS_PER_UNIT).quantize(_CENT, rounding=ROUND_HALF_UP)
