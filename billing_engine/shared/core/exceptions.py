from typing import Optional, Dict, Any


class BillingEngineException(Exception):
    """Base exception for infrastructure failures inside the billing engine."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(BillingEngineException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class PaymentProviderError(BillingEngineException):
    """Raised when the payment processor API fails or rejects a request."""
    def __init__(self, message: str, code: str = "payment_provider_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=502, details=details)


class EngineNotStartedError(BillingEngineException):
    """Raised when the engine is used outside its startup/shutdown lifecycle."""
    def __init__(self, message: str = "Billing engine has not been started"):
        super().__init__(message, code="engine_not_started", status_code=503)
