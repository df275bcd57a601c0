"""
Distributed Lock

Redis-backed lease lock used to serialise activation and cancellation of a
subscription across processes. Built on redis-py's Lock (SET NX PX plus a
token-checked release script), so a crashed holder's lease simply expires.

Usage:
    lock = DistributedLock(redis)
    if not await lock.acquire("subscription:activate:<id>", timeout_ms=30000):
        return retry_later()
    try:
        ...
    finally:
        await lock.release()
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, LockNotOwnedError

logger = structlog.get_logger()

LOCK_KEY_PREFIX = "lock"
DEFAULT_LEASE_SECONDS = 30.0
DEFAULT_RETRY_INTERVAL_SECONDS = 0.1


def activation_lock_key(subscription_id: object) -> str:
    return f"subscription:activate:{subscription_id}"


def cancellation_lock_key(user_id: object) -> str:
    return f"subscription:cancel:{user_id}"


class DistributedLock:
    """
    A single lock handle: one resource held at a time.

    `acquire` waits at most `timeout_ms` and returns False on timeout; callers
    treat that as a retryable outcome. Redis connectivity errors propagate.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ) -> None:
        self._redis = redis
        self.lease_seconds = lease_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self._lock: Optional[Lock] = None
        self._resource_key: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._lock is not None

    @property
    def resource_key(self) -> Optional[str]:
        return self._resource_key

    async def acquire(self, resource_key: str, timeout_ms: int) -> bool:
        if self._lock is not None:
            raise LockError(
                f"Lock handle already holds {self._resource_key}; release it first"
            )

        lock = self._redis.lock(
            f"{LOCK_KEY_PREFIX}:{resource_key}",
            timeout=self.lease_seconds,
            sleep=self.retry_interval_seconds,
            blocking=True,
            blocking_timeout=max(timeout_ms, 0) / 1000,
        )
        acquired = bool(await lock.acquire())
        if not acquired:
            logger.info(
                "distributed_lock_timeout", resource=resource_key, timeout_ms=timeout_ms
            )
            return False

        self._lock = lock
        self._resource_key = resource_key
        logger.debug("distributed_lock_acquired", resource=resource_key)
        return True

    async def release(self) -> bool:
        """Release the held lease. Releasing an unheld or expired lease is not an error."""
        lock, resource_key = self._lock, self._resource_key
        if lock is None:
            return False

        self._lock = None
        self._resource_key = None
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning(
                "distributed_lock_lease_expired",
                resource=resource_key,
                lease_seconds=self.lease_seconds,
            )
            return False
        except LockError as exc:
            logger.warning(
                "distributed_lock_release_failed", resource=resource_key, error=str(exc)
            )
            return False

        logger.debug("distributed_lock_released", resource=resource_key)
        return True

    async def extend(self, additional_seconds: float) -> bool:
        """Extend the lease if this handle still owns it."""
        if self._lock is None:
            return False
        try:
            return bool(await self._lock.extend(additional_seconds))
        except LockError as exc:
            logger.warning(
                "distributed_lock_extend_failed",
                resource=self._resource_key,
                error=str(exc),
            )
            return False

    @asynccontextmanager
    async def hold(self, resource_key: str, timeout_ms: int) -> AsyncIterator[bool]:
        """Yield whether the lock was acquired; always release on exit."""
        acquired = await self.acquire(resource_key, timeout_ms)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release()
