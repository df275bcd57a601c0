"""
Billing API Endpoints

Thin HTTP layer over the BillingEngine held on `app.state`:
- POST /webhook         Paystack events (HMAC-SHA512 verified)
- POST /verify-payment  manual verification callback
- POST /cancel          user-initiated cancellation
- POST /proration       proration preview for a plan change
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from billing_engine.modules.billing.domain.billing.cancellation import (
    LOCK_TIMEOUT_MESSAGE,
    NO_SUBSCRIPTION_MESSAGE,
)
from billing_engine.modules.billing.domain.billing.engine import BillingEngine, PaymentOutcome
from billing_engine.modules.billing.domain.billing.paystack_webhook_impl import WebhookHandler
from billing_engine.modules.billing.domain.billing.proration import is_downgrade, is_upgrade
from billing_engine.shared.core.exceptions import BillingEngineException

from .billing_models import (
    CancelSubscriptionRequest,
    ProrationPreviewRequest,
    ProrationPreviewResponse,
    VerifyPaymentRequest,
)

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"


def get_billing_engine(request: Request) -> BillingEngine:
    engine = getattr(request.app.state, "billing_engine", None)
    if engine is None or not engine.started:
        raise HTTPException(503, "Billing engine not available")
    return engine


@router.post("/webhook")
async def handle_webhook(
    request: Request, engine: BillingEngine = Depends(get_billing_engine)
) -> Any:
    """
    Handle Paystack webhook events.

    Lock contention and infrastructure failures answer 5xx so Paystack
    redelivers; the engine's idempotency makes redelivery safe.
    """
    payload = await request.body()
    signature = request.headers.get(PAYSTACK_SIGNATURE_HEADER, "")
    try:
        result = await WebhookHandler(engine).handle(request, payload, signature)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("webhook_failed", error=str(e))
        raise HTTPException(500, "Webhook processing failed") from e

    if result.get("status") == PaymentOutcome.RETRY.value:
        return JSONResponse(status_code=503, content=result)
    return result


@router.post("/verify-payment")
async def verify_payment(
    verify_req: VerifyPaymentRequest, engine: BillingEngine = Depends(get_billing_engine)
) -> Any:
    """Verify a reference with Paystack and activate the subscription it pays for."""
    try:
        result = await engine.verify_payment(
            verify_req.reference, subscription_id=verify_req.subscription_id
        )
    except BillingEngineException as e:
        logger.error("verify_payment_failed", reference=verify_req.reference, error=e.message)
        raise HTTPException(e.status_code, e.message) from e

    body = result.model_dump(mode="json")
    if result.outcome == PaymentOutcome.RETRY:
        return JSONResponse(status_code=503, content=body)
    return body


@router.post("/cancel")
async def cancel_subscription(
    cancel_req: CancelSubscriptionRequest, engine: BillingEngine = Depends(get_billing_engine)
) -> Dict[str, Any]:
    """Cancel the user's current subscription."""
    result = await engine.cancel_subscription(cancel_req.user_id)
    if result.message == LOCK_TIMEOUT_MESSAGE:
        raise HTTPException(503, "Subscription is busy, retry later")
    if result.message == NO_SUBSCRIPTION_MESSAGE:
        raise HTTPException(404, NO_SUBSCRIPTION_MESSAGE)
    return result.model_dump(mode="json")


@router.post("/proration", response_model=ProrationPreviewResponse)
async def preview_proration(
    proration_req: ProrationPreviewRequest,
    engine: BillingEngine = Depends(get_billing_engine),
) -> ProrationPreviewResponse:
    try:
        proration = engine.calculate_proration(
            proration_req.old_price,
            proration_req.new_price,
            proration_req.period_start,
            proration_req.period_end,
            proration_req.change_date,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))

    return ProrationPreviewResponse(
        amount=proration.amount,
        description=proration.description,
        old_plan_daily_rate=proration.old_plan_daily_rate,
        new_plan_daily_rate=proration.new_plan_daily_rate,
        remaining_days=proration.remaining_days,
        total_days=proration.total_days,
        old_plan_credit=proration.old_plan_credit,
        new_plan_charge=proration.new_plan_charge,
        is_upgrade=is_upgrade(proration_req.old_price, proration_req.new_price),
        is_downgrade=is_downgrade(proration_req.old_price, proration_req.new_price),
    )
