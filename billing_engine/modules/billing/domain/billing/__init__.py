"""Billing Services."""

from billing_engine.modules.billing.domain.billing.activation import (
    ActivationRequest,
    ActivationResult,
    PaymentData,
    SubscriptionActivator,
)
from billing_engine.modules.billing.domain.billing.cancellation import (
    CancellationResult,
    SubscriptionCanceller,
)
from billing_engine.modules.billing.domain.billing.engine import BillingEngine
from billing_engine.modules.billing.domain.billing.paystack_client_impl import PaystackClient
from billing_engine.modules.billing.domain.billing.paystack_webhook_impl import WebhookHandler
from billing_engine.modules.billing.domain.billing.proration import calculate_proration
from billing_engine.modules.billing.domain.billing.subscription_matching import (
    CandidateMatcher,
    PaymentCorrelation,
    SubscriptionMatch,
)


__all__ = [
    "ActivationRequest",
    "ActivationResult",
    "BillingEngine",
    "CancellationResult",
    "CandidateMatcher",
    "PaymentCorrelation",
    "PaymentData",
    "PaystackClient",
    "SubscriptionActivator",
    "SubscriptionCanceller",
    "SubscriptionMatch",
    "WebhookHandler",
    "calculate_proration",
]
