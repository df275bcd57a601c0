"""
Idempotency Guard

Caches the outcome of an operation under a deterministic key so a retried
request (e.g. a Paystack webhook redelivery) returns the first outcome instead
of re-running side effects.

Results are pydantic models; they are stored as JSON in Redis with a TTL.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import structlog
from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

logger = structlog.get_logger()

ResultT = TypeVar("ResultT", bound=BaseModel)


def activation_idempotency_key(subscription_id: object, reference: Optional[str]) -> str:
    return f"activate_subscription:{subscription_id}:{reference or 'manual'}"


@dataclass(frozen=True)
class IdempotentResult(Generic[ResultT]):
    result: ResultT
    from_cache: bool

    @property
    def is_new(self) -> bool:
        return not self.from_cache


class IdempotencyGuard:
    """Redis-backed result cache keyed by idempotency key."""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def get(self, key: str, result_type: type[ResultT]) -> Optional[ResultT]:
        cached = await self._redis.get(key)
        if cached is None:
            return None
        if isinstance(cached, bytes):
            cached = cached.decode("utf-8")
        try:
            return result_type.model_validate_json(cached)
        except ValidationError as exc:
            # An unreadable record must not block the operation; it is recomputed.
            logger.warning("idempotency_record_invalid", key=key, error=str(exc))
            return None

    async def with_idempotency(
        self,
        key: str,
        ttl_seconds: int,
        fn: Callable[[], Awaitable[ResultT]],
        result_type: type[ResultT],
        *,
        should_cache: Callable[[ResultT], bool] | None = None,
    ) -> IdempotentResult[ResultT]:
        """
        Run `fn` once per key within the TTL.

        Exceptions raised by `fn` propagate and nothing is stored. Results
        rejected by `should_cache` are returned but not stored, so the
        operation can be retried.
        """
        cached = await self.get(key, result_type)
        if cached is not None:
            logger.info("idempotency_cache_hit", key=key)
            return IdempotentResult(result=cached, from_cache=True)

        result = await fn()

        if should_cache is None or should_cache(result):
            await self._redis.set(key, result.model_dump_json(), ex=ttl_seconds)
            logger.debug("idempotency_result_stored", key=key, ttl_seconds=ttl_seconds)
        return IdempotentResult(result=result, from_cache=False)
