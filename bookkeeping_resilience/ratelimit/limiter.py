"""
Fixed-window rate limiter.

Each (namespace, identifier) gets a counter that lives for
window_seconds from its first request. Requests beyond max_requests in
the window are denied with retry_after = seconds until the window resets.

DESIGN DECISION: The limiter FAILS OPEN. If the counter store is
unavailable the request is allowed, and the failure is logged and
audited. Throttling is a protection, not a dependency.

Counting is serialized per key with an asyncio.Lock, so concurrent
requests for the same caller never lose an increment even when the
store suspends.
"""

import asyncio
import weakref
from typing import Any, Optional

import structlog

from bookkeeping_resilience.audit import AuditLogger
from bookkeeping_resilience.clock import Clock, SystemClock
from bookkeeping_resilience.errors import RateLimitExceededError
from bookkeeping_resilience.models.resilience import (
    RateLimitConfig,
    RateLimitResult,
    RateLimitStats,
    RateLimitWindow,
)
from bookkeeping_resilience.ratelimit.policies import get_rate_limit_config
from bookkeeping_resilience.services.storage import (
    InMemoryRateLimitStore,
    RateLimitStore,
)


ABUSE_MULTIPLIER = 2


class RateLimiter:
    """
    Fixed-window request counter over a RateLimitStore.

    Usage:
        limiter = RateLimiter(InMemoryRateLimitStore(clock))
        result = await limiter.check_rate_limit("auth", client_ip, RateLimitPolicies.AUTH)
        if not result.allowed:
            return 429, {"Retry-After": str(result.retry_after)}
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        enabled: bool = True,
        logger: Any = None,
    ):
        self._clock = clock or SystemClock()
        self._store = store or InMemoryRateLimitStore(clock=self._clock)
        self._audit_logger = audit_logger or AuditLogger()
        self._enabled = enabled
        self._logger = logger or structlog.get_logger(__name__)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def _lock_for(self, namespace: str, identifier: str) -> asyncio.Lock:
        key = f"{namespace}:{identifier}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def check_rate_limit(
        self,
        namespace: str,
        identifier: str,
        config: RateLimitConfig,
    ) -> RateLimitResult:
        """
        Count one request and decide whether it is allowed.

        Never raises for store problems: they yield an allowed result
        with the full limit remaining.
        """
        if not self._enabled:
            return self._allow_all(config)

        lock = self._lock_for(namespace, identifier)
        try:
            async with lock:
                return await self._count(namespace, identifier, config)
        except Exception as exc:
            self._logger.error(
                "rate_limit_check_failed",
                namespace=namespace,
                identifier=identifier,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._audit_logger.log_rate_limit_store_failure(
                namespace=namespace,
                identifier=identifier,
                error_message=str(exc),
            )
            return self._allow_all(config)

    async def _count(
        self,
        namespace: str,
        identifier: str,
        config: RateLimitConfig,
    ) -> RateLimitResult:
        now = self._clock.now()
        window = await self._store.get(namespace, identifier)

        if window is None or now > window.window_start + config.window_seconds:
            fresh = RateLimitWindow(
                namespace=namespace,
                identifier=identifier,
                window_start=now,
                count=1,
                window_seconds=config.window_seconds,
            )
            await self._store.set(fresh, ttl_seconds=config.window_seconds)
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - 1,
                reset_at=fresh.reset_at,
                retry_after=0,
                limit=config.max_requests,
            )

        count = window.count + 1
        updated = window.model_copy(
            update={"count": count, "window_seconds": config.window_seconds}
        )
        reset_at = updated.reset_at
        await self._store.set(updated, ttl_seconds=reset_at - now)

        if count > config.max_requests:
            retry_after = updated.retry_after(now)
            self._logger.warning(
                "rate_limit_exceeded",
                namespace=namespace,
                identifier=identifier,
                count=count,
                limit=config.max_requests,
                retry_after=retry_after,
            )
            await self._audit_logger.log_rate_limit_exceeded(
                namespace=namespace,
                identifier=identifier,
                count=count,
                limit=config.max_requests,
                retry_after=retry_after,
            )
            # Once per window, on the request that crosses twice the limit
            if count == config.max_requests * ABUSE_MULTIPLIER + 1:
                await self._audit_logger.log_rate_limit_abuse(
                    namespace=namespace,
                    identifier=identifier,
                    count=count,
                    limit=config.max_requests,
                )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
                limit=config.max_requests,
            )

        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - count,
            reset_at=reset_at,
            retry_after=0,
            limit=config.max_requests,
        )

    def _allow_all(self, config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests,
            reset_at=self._clock.now() + config.window_seconds,
            retry_after=0,
            limit=config.max_requests,
        )

    async def enforce(
        self,
        namespace: str,
        identifier: str,
        config: RateLimitConfig,
    ) -> RateLimitResult:
        """Like check_rate_limit, but raises RateLimitExceededError when denied."""
        result = await self.check_rate_limit(namespace, identifier, config)
        if not result.allowed:
            raise RateLimitExceededError(
                retry_after=result.retry_after,
                namespace=namespace,
                identifier=identifier,
                limit=result.limit,
                reset_at=result.reset_at,
            )
        return result

    async def check_request(self, method: str, path: str, identifier: str) -> RateLimitResult:
        """Check an inbound HTTP request against the limit for its endpoint family."""
        config = get_rate_limit_config(method, path)
        return await self.check_rate_limit(config.namespace, identifier, config)

    async def _live_window(
        self,
        identifier: str,
        config: RateLimitConfig,
    ) -> Optional[RateLimitWindow]:
        window = await self._store.get(config.namespace, identifier)
        if window is None or self._clock.now() > window.window_start + config.window_seconds:
            return None
        return window

    async def is_rate_limited(self, identifier: str, config: RateLimitConfig) -> bool:
        """Read-only: would the next request for this caller be over the limit?"""
        if not self._enabled:
            return False
        window = await self._live_window(identifier, config)
        return window is not None and window.count >= config.max_requests

    async def reset_rate_limit(self, identifier: str, config: RateLimitConfig) -> bool:
        """Forget a caller's counter (admin action)."""
        removed = await self._store.delete(config.namespace, identifier)
        self._logger.info(
            "rate_limit_reset",
            namespace=config.namespace,
            identifier=identifier,
            removed=removed,
        )
        await self._audit_logger.log_rate_limit_reset(config.namespace, identifier)
        return removed

    async def get_rate_limit_stats(self, identifier: str, config: RateLimitConfig) -> RateLimitStats:
        window = await self._live_window(identifier, config)
        if window is None:
            return RateLimitStats(count=0, remaining=config.max_requests, reset_at=None)
        return RateLimitStats(
            count=window.count,
            remaining=window.remaining(config.max_requests),
            reset_at=window.window_start + config.window_seconds,
        )

    async def clear(self) -> None:
        await self._store.clear()
