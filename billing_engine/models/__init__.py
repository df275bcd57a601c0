from billing_engine.models.billing import (
    BillingPlan,
    Payment,
    Subscription,
    SubscriptionHistory,
    User,
)
from billing_engine.modules.governance.domain.security.audit_log import AuditLog

__all__ = [
    "AuditLog",
    "BillingPlan",
    "Payment",
    "Subscription",
    "SubscriptionHistory",
    "User",
]
