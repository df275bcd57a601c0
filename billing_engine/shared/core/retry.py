"""
Retry Logic with Exponential Backoff

Tenacity-based retry decorators for calls to the payment processor and other
unreliable collaborators.
"""
import asyncio
from typing import Any, Callable, TypeVar

import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

logger = structlog.get_logger()
T = TypeVar('T')

# Default retry configurations
RETRY_CONFIGS: dict[str, dict[str, Any]] = {
    "external_api": {
        "max_attempts": 3,
        "min_wait": 1.0,
        "max_wait": 10.0,
        "multiplier": 2.0,
        "exceptions": (httpx.TransportError, ConnectionError, asyncio.TimeoutError),
    },
}


def _log_before_sleep(retry_state: Any) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "operation_failed_will_retry",
        attempt=retry_state.attempt_number,
        error=str(error) if error else None,
        error_type=type(error).__name__ if error else None,
    )


def tenacity_retry(operation_type: str = "external_api", max_attempts: int | None = None):
    """
    Decorator using tenacity for exponential-backoff retries.

    Only the transient exception types configured for the operation type are
    retried; anything else propagates on the first attempt.
    """
    config = RETRY_CONFIGS.get(operation_type, RETRY_CONFIGS["external_api"])

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @retry(
            stop=stop_after_attempt(max_attempts or config["max_attempts"]),
            wait=wait_exponential(
                multiplier=config["multiplier"],
                min=config["min_wait"],
                max=config["max_wait"]
            ),
            retry=retry_if_exception_type(config["exceptions"]),
            before_sleep=_log_before_sleep,
            reraise=True,
        )
        async def wrapper(*args, **kwargs) -> T:
            return await func(*args, **kwargs)
        return wrapper
    return decorator

