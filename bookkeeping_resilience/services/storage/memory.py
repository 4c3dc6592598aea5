"""
In-memory storage backends.

Process-local only: counters and audit events are lost on restart.
"""

from typing import Optional
from uuid import UUID

import structlog

from bookkeeping_resilience.clock import Clock, SystemClock
from bookkeeping_resilience.models.audit import AuditEvent
from bookkeeping_resilience.models.resilience import RateLimitWindow
from bookkeeping_resilience.services.storage.interface import (
    AuditStorageInterface,
    RateLimitStore,
)


class InMemoryRateLimitStore(RateLimitStore):
    """
    Dictionary-backed rate limit store.

    Expired windows are purged when read. Before a new key is inserted
    while the store holds max_size windows or more, every expired window
    is swept.
    """

    def __init__(self, clock: Optional[Clock] = None, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._clock = clock or SystemClock()
        self._max_size = max_size
        # key -> (window, expires_at)
        self._windows: dict[str, tuple[RateLimitWindow, float]] = {}
        self._logger = structlog.get_logger(__name__)

    @staticmethod
    def _key(namespace: str, identifier: str) -> str:
        return f"{namespace}:{identifier}"

    async def get(self, namespace: str, identifier: str) -> Optional[RateLimitWindow]:
        key = self._key(namespace, identifier)
        entry = self._windows.get(key)
        if entry is None:
            return None

        window, expires_at = entry
        if self._clock.now() > expires_at:
            del self._windows[key]
            return None
        return window

    async def set(self, window: RateLimitWindow, ttl_seconds: float) -> None:
        key = window.key
        if key not in self._windows and len(self._windows) >= self._max_size:
            await self.sweep()
        self._windows[key] = (window, self._clock.now() + max(0.0, ttl_seconds))

    async def delete(self, namespace: str, identifier: str) -> bool:
        return self._windows.pop(self._key(namespace, identifier), None) is not None

    async def clear(self) -> None:
        self._windows.clear()

    async def sweep(self) -> int:
        now = self._clock.now()
        expired = [key for key, (_, expires_at) in self._windows.items() if now > expires_at]
        for key in expired:
            del self._windows[key]
        if expired:
            self._logger.debug(
                "rate_limit_store_swept",
                removed=len(expired),
                remaining=len(self._windows),
            )
        return len(expired)

    async def size(self) -> int:
        return len(self._windows)


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_recent_events(
        self,
        limit: int = 100,
        event_type: Optional[str] = None,
    ) -> list[AuditEvent]:
        events = self._events
        if event_type:
            events = [e for e in events if e.event_type.value == event_type]
        return list(reversed(events))[:limit]
