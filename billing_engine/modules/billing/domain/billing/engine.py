"""
Billing Engine

Composition root for payment correlation and subscription activation.
Clients (database, Redis, Paystack) are passed in or built from settings and
have an explicit startup/shutdown lifecycle; nothing is a module-level
singleton.

Pipeline for an inbound payment:
    recorded reference or match (unless an explicit subscription id is given)
    -> validate -> amount audit -> activate (lock + idempotency + transaction)
    -> link
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel
from redis.asyncio import Redis, from_url
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_engine.models.billing import Payment
from billing_engine.modules.governance.domain.security.audit_log import (
    AuditEventType,
    AuditLogger,
)
from billing_engine.shared.core.config import Settings, get_settings
from billing_engine.shared.core.exceptions import (
    ConfigurationError,
    EngineNotStartedError,
)
from billing_engine.shared.db.session import build_engine, build_session_maker

from .activation import (
    ActivationReason,
    ActivationRequest,
    ActivationResult,
    PaymentData,
    SubscriptionActivator,
    provider_link_lease_seconds,
)
from .amount_validation import record_amount_validation, validate_payment_amount
from .cancellation import CancellationResult, SubscriptionCanceller
from .match_validator import MatchValidator, ValidationResult
from .paystack_client_impl import PaystackClient
from .paystack_shared import ActivationSource
from .proration import ProrationResult, calculate_proration
from .subscription_matching import CandidateMatcher, PaymentCorrelation, SubscriptionMatch

logger = structlog.get_logger()

DUPLICATE_PAYMENT_REASON = "Payment already processed for this subscription"
EXPLICIT_MATCH_CONFIDENCE = 95
EXPLICIT_MATCH_PRIORITY = 900
RECORDED_MATCH_CONFIDENCE = 100
RECORDED_MATCH_PRIORITY = 1000


class PaymentOutcome(str, Enum):
    ACTIVATED = "activated"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"
    RETRY = "retry"
    NOT_SUCCESSFUL = "not_successful"


class PaymentProcessingResult(BaseModel):
    outcome: PaymentOutcome
    reference: str
    subscription_id: Optional[UUID] = None
    match: Optional[SubscriptionMatch] = None
    validation: Optional[ValidationResult] = None
    activation: Optional[ActivationResult] = None
    reason: Optional[str] = None


class BillingEngine:
    """
    Usage:
        engine = BillingEngine.from_settings(get_settings())
        await engine.startup()
        ...
        await engine.shutdown()
    """

    def __init__(
        self,
        *,
        session_maker: async_sessionmaker[AsyncSession],
        redis: Redis,
        paystack_client: PaystackClient | None = None,
        settings: Settings | None = None,
        db_engine: AsyncEngine | None = None,
        owns_clients: bool = False,
    ):
        self.settings = settings or get_settings()
        self.session_maker = session_maker
        self.redis = redis
        self.paystack_client = paystack_client
        self._db_engine = db_engine
        self._owns_clients = owns_clients
        self._started = False

        self.audit_logger = AuditLogger(session_maker)
        self.matcher = CandidateMatcher(session_maker, redis)
        self.validator = MatchValidator(
            session_maker,
            recent_activation_window_seconds=self.settings.RECENT_ACTIVATION_WINDOW_SECONDS,
        )
        self.activator = SubscriptionActivator(
            session_maker,
            redis,
            self.audit_logger,
            paystack_client=paystack_client,
            lock_timeout_seconds=self.settings.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS,
            lock_lease_seconds=self.settings.SUBSCRIPTION_LOCK_LEASE_SECONDS,
            link_lease_seconds=provider_link_lease_seconds(
                self.settings.PAYSTACK_TIMEOUT_SECONDS, self.settings.PAYSTACK_MAX_RETRIES
            ),
            idempotency_ttl_seconds=self.settings.ACTIVATION_IDEMPOTENCY_TTL_SECONDS,
        )
        self.canceller = SubscriptionCanceller(
            session_maker,
            redis,
            self.audit_logger,
            paystack_client=paystack_client,
            lock_timeout_seconds=self.settings.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS,
            lock_lease_seconds=self.settings.SUBSCRIPTION_LOCK_LEASE_SECONDS,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingEngine":
        if not settings.REDIS_URL:
            raise ConfigurationError("REDIS_URL not configured")
        db_engine = build_engine(settings)
        paystack_client = (
            PaystackClient.from_settings(settings) if settings.PAYSTACK_SECRET_KEY else None
        )
        if paystack_client is None:
            logger.warning("billing_engine_paystack_disabled")
        return cls(
            session_maker=build_session_maker(db_engine),
            redis=from_url(settings.REDIS_URL, decode_responses=True),
            paystack_client=paystack_client,
            settings=settings,
            db_engine=db_engine,
            owns_clients=True,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self) -> None:
        # Fail fast: locks and idempotency records are unusable without Redis.
        await self.redis.ping()
        self._started = True
        logger.info("billing_engine_started", paystack_enabled=self.paystack_client is not None)

    async def shutdown(self) -> None:
        self._started = False
        if not self._owns_clients:
            logger.info("billing_engine_stopped")
            return
        if self.paystack_client is not None:
            await self.paystack_client.close()
        await self.redis.aclose()
        if self._db_engine is not None:
            await self._db_engine.dispose()
        logger.info("billing_engine_stopped")

    def _require_started(self) -> None:
        if not self._started:
            raise EngineNotStartedError()

    async def find_best_match(self, correlation: PaymentCorrelation) -> Optional[SubscriptionMatch]:
        self._require_started()
        return await self.matcher.find_best_match(correlation)

    async def validate_match(
        self, match: SubscriptionMatch, correlation: PaymentCorrelation
    ) -> ValidationResult:
        self._require_started()
        return await self.validator.validate(match, correlation)

    async def activate_subscription(self, request: ActivationRequest) -> ActivationResult:
        self._require_started()
        return await self.activator.activate(request)

    async def cancel_subscription(self, user_id: UUID) -> CancellationResult:
        self._require_started()
        return await self.canceller.cancel(user_id)

    async def handle_provider_disable(self, provider_subscription_id: str) -> CancellationResult:
        self._require_started()
        return await self.canceller.handle_provider_disable(provider_subscription_id)

    async def remember_reference(self, reference: str, subscription_id: UUID) -> None:
        """Called at checkout so the webhook can resolve the reference directly."""
        self._require_started()
        await self.matcher.remember_reference(
            reference, subscription_id, self.settings.REFERENCE_MAPPING_TTL_SECONDS
        )

    @staticmethod
    def calculate_proration(
        old_price: Any,
        new_price: Any,
        period_start: datetime,
        period_end: datetime,
        change_date: Optional[datetime] = None,
    ) -> ProrationResult:
        return calculate_proration(old_price, new_price, period_start, period_end, change_date)

    async def process_payment(
        self,
        correlation: PaymentCorrelation,
        *,
        explicit_subscription_id: Optional[UUID] = None,
        source: ActivationSource = ActivationSource.WEBHOOK,
        authorization_code: Optional[str] = None,
    ) -> PaymentProcessingResult:
        """Correlate a successful payment with a subscription and activate it."""
        self._require_started()
        log = logger.bind(reference=correlation.reference, source=source.value)

        if explicit_subscription_id is not None:
            match: Optional[SubscriptionMatch] = SubscriptionMatch(
                subscription_id=explicit_subscription_id,
                confidence=EXPLICIT_MATCH_CONFIDENCE,
                match_reasons=["explicit_subscription_id"],
                priority=EXPLICIT_MATCH_PRIORITY,
            )
        else:
            match = await self._recorded_payment_match(correlation)
            if match is None:
                match = await self.matcher.find_best_match(correlation)

        if match is None:
            log.warning("payment_unmatched", amount=correlation.amount, currency=correlation.currency)
            await self.audit_logger.try_log(
                AuditEventType.PAYMENT_UNMATCHED,
                resource_type="payment",
                resource_id=correlation.payment_id,
                correlation_id=correlation.reference,
                details={
                    "reference": correlation.reference,
                    "amount": correlation.amount,
                    "currency": correlation.currency,
                    "metadata": correlation.metadata,
                },
                success=False,
                error_message="No unambiguous subscription match",
            )
            return PaymentProcessingResult(
                outcome=PaymentOutcome.UNMATCHED, reference=correlation.reference
            )

        validation = await self.validator.validate(match, correlation)
        if not validation.is_valid:
            if validation.reason == DUPLICATE_PAYMENT_REASON:
                log.info("payment_duplicate_ignored", subscription_id=str(match.subscription_id))
                return PaymentProcessingResult(
                    outcome=PaymentOutcome.DUPLICATE,
                    reference=correlation.reference,
                    subscription_id=match.subscription_id,
                    match=match,
                    validation=validation,
                    reason=validation.reason,
                )
            await self.audit_logger.try_log(
                AuditEventType.PAYMENT_REJECTED,
                resource_type="subscription",
                resource_id=str(match.subscription_id),
                correlation_id=correlation.reference,
                details={
                    "reference": correlation.reference,
                    "confidence": match.confidence,
                    "match_reasons": match.match_reasons,
                    "warnings": match.warnings,
                },
                success=False,
                error_message=validation.reason,
            )
            return PaymentProcessingResult(
                outcome=PaymentOutcome.REJECTED,
                reference=correlation.reference,
                subscription_id=match.subscription_id,
                match=match,
                validation=validation,
                reason=validation.reason,
            )

        amount_check = await validate_payment_amount(
            self.session_maker, match.subscription_id, correlation.amount, correlation.currency
        )
        await record_amount_validation(
            self.audit_logger, match.subscription_id, correlation.reference, amount_check
        )

        activation = await self.activator.activate(
            ActivationRequest(
                subscription_id=match.subscription_id,
                payment_data=PaymentData(
                    reference=correlation.reference,
                    payment_id=correlation.payment_id,
                    amount=correlation.amount,
                    currency=correlation.currency,
                    authorization_code=authorization_code,
                ),
                source=source,
            )
        )

        if activation.success:
            outcome = (
                PaymentOutcome.DUPLICATE
                if activation.replayed or activation.reason == ActivationReason.ALREADY_ACTIVE
                else PaymentOutcome.ACTIVATED
            )
        elif activation.reason == ActivationReason.LOCK_TIMEOUT:
            outcome = PaymentOutcome.RETRY
        else:
            outcome = PaymentOutcome.REJECTED

        log.info(
            "payment_processed",
            outcome=outcome.value,
            subscription_id=str(match.subscription_id),
            confidence=match.confidence,
        )
        return PaymentProcessingResult(
            outcome=outcome,
            reference=correlation.reference,
            subscription_id=match.subscription_id,
            match=match,
            validation=validation,
            activation=activation,
            reason=activation.reason.value if activation.reason else None,
        )

    async def _recorded_payment_match(
        self, correlation: PaymentCorrelation
    ) -> Optional[SubscriptionMatch]:
        """A reference already stored on a payment is a redelivery of a processed charge."""
        async with self.session_maker() as session:
            subscription_id = (
                await session.execute(
                    select(Payment.subscription_id).where(
                        Payment.provider_payment_ref == correlation.reference
                    )
                )
            ).scalar_one_or_none()
        if subscription_id is None:
            return None
        return SubscriptionMatch(
            subscription_id=subscription_id,
            confidence=RECORDED_MATCH_CONFIDENCE,
            match_reasons=["recorded_payment_reference"],
            priority=RECORDED_MATCH_PRIORITY,
        )

    async def verify_payment(
        self, reference: str, subscription_id: Optional[UUID] = None
    ) -> PaymentProcessingResult:
        """Manual verification callback: confirm the charge with Paystack, then process it."""
        self._require_started()
        if self.paystack_client is None:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")

        transaction = await self.paystack_client.verify_transaction(reference)
        if transaction.get("status") != "success":
            logger.info(
                "payment_verification_not_successful",
                reference=reference,
                status=transaction.get("status"),
            )
            return PaymentProcessingResult(
                outcome=PaymentOutcome.NOT_SUCCESSFUL,
                reference=reference,
                subscription_id=subscription_id,
                reason=str(transaction.get("status")),
            )

        correlation = PaymentCorrelation.from_paystack_charge(transaction)
        return await self.process_payment(
            correlation,
            explicit_subscription_id=subscription_id or correlation.setup_subscription_id(),
            source=ActivationSource.VERIFICATION,
            authorization_code=authorization_code_from_charge(transaction),
        )


def authorization_code_from_charge(data: dict[str, Any]) -> Optional[str]:
    """Reusable card authorizations only; one-off channels cannot back a subscription."""
    authorization = data.get("authorization")
    if not isinstance(authorization, dict):
        return None
    if authorization.get("reusable") is False:
        return None
    code = authorization.get("authorization_code")
    return str(code) if code else None
