"""Proration for mid-period plan changes. Pure; callers decide how to apply it."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from billing_engine.shared.core.currency import to_decimal

SECONDS_PER_DAY = 86400
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProrationResult:
    """`amount` > 0 means charge the customer, < 0 means credit them."""

    amount: Decimal
    description: str
    old_plan_daily_rate: Decimal
    new_plan_daily_rate: Decimal
    remaining_days: int
    total_days: int
    old_plan_credit: Decimal
    new_plan_charge: Decimal


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ceil_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_proration(
    old_price: Any,
    new_price: Any,
    period_start: datetime,
    period_end: datetime,
    change_date: Optional[datetime] = None,
) -> ProrationResult:
    period_start = _as_utc(period_start)
    period_end = _as_utc(period_end)
    change_date = _as_utc(change_date or datetime.now(timezone.utc))

    total_days = _ceil_days(period_start, period_end)
    if total_days <= 0:
        raise ValueError("period_end must be after period_start")
    remaining_days = max(0, _ceil_days(change_date, period_end))

    old_daily_rate = to_decimal(old_price) / total_days
    new_daily_rate = to_decimal(new_price) / total_days
    old_credit = old_daily_rate * remaining_days
    new_charge = new_daily_rate * remaining_days

    if remaining_days > 0:
        description = f"Plan change proration: {remaining_days} days remaining in billing period"
    else:
        description = "Plan change (no proration - period ended)"

    return ProrationResult(
        amount=_money(new_charge - old_credit),
        description=description,
        old_plan_daily_rate=_money(old_daily_rate),
        new_plan_daily_rate=_money(new_daily_rate),
        remaining_days=remaining_days,
        total_days=total_days,
        old_plan_credit=_money(old_credit),
        new_plan_charge=_money(new_charge),
    )


def is_upgrade(old_price: Any, new_price: Any) -> bool:
    return to_decimal(new_price) > to_decimal(old_price)


def is_downgrade(old_price: Any, new_price: Any) -> bool:
    return to_decimal(new_price) < to_decimal(old_price)
