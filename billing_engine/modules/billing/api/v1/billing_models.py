from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class VerifyPaymentRequest(BaseModel):
    reference: str
    subscription_id: Optional[UUID] = None


class CancelSubscriptionRequest(BaseModel):
    user_id: UUID


class ProrationPreviewRequest(BaseModel):
    old_price: Decimal
    new_price: Decimal
    period_start: datetime
    period_end: datetime
    change_date: Optional[datetime] = None


class ProrationPreviewResponse(BaseModel):
    amount: Decimal
    description: str
    old_plan_daily_rate: Decimal
    new_plan_daily_rate: Decimal
    remaining_days: int
    total_days: int
    old_plan_credit: Decimal
    new_plan_charge: Decimal
    is_upgrade: bool
    is_downgrade: bool
