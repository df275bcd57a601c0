import logging
import re
import sys
from typing import Any, cast

import structlog

from billing_engine.shared.core.config import get_settings

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")

# Paystack payloads carry reusable card authorizations and subscription email
# tokens; either is enough to charge or cancel on the customer's behalf.
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "token",
        "secret",
        "authorization",
        "authorization_code",
        "auth",
        "api_key",
        "apikey",
        "email_token",
        "secret_key",
        "signature",
        "x_paystack_signature",
        "bin",
        "last4",
    }
)
SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key")
SENSITIVE_FRAGMENTS = ("authorization", "secret", "token", "apikey", "api_key")


def _is_sensitive_key(key: Any) -> bool:
    normalized = str(key).lower().strip().replace("-", "_")
    if normalized in SENSITIVE_FIELDS or normalized.endswith(SENSITIVE_SUFFIXES):
        return True
    return any(fragment in normalized for fragment in SENSITIVE_FRAGMENTS)


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("[REDACTED]" if _is_sensitive_key(k) else _redact(v)) for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    if isinstance(data, str):
        return EMAIL_PATTERN.sub("[EMAIL_REDACTED]", data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact payer emails and credential-bearing fields.
    Correlation logs use `email_hash` instead of the address.
    """
    redacted = _redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_service_context(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # Support async context
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_service_context,
        pii_redactor,  # Redact before rendering
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, sqlalchemy) through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
