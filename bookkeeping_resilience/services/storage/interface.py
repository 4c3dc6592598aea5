"""
Abstract Storage Interface

DESIGN DECISION: Rate limit counters and audit events go through
abstract interfaces. The in-memory implementations serve a single
process; a shared store (Redis, a database table) can replace them
without touching the counting algorithm or the audit logger.

The interface is intentionally small - only the operations the
rate limiter and audit logger need.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from bookkeeping_resilience.models.audit import AuditEvent
from bookkeeping_resilience.models.resilience import RateLimitWindow


class RateLimitStore(ABC):
    """
    Abstract interface for rate limit counter storage.

    Windows are keyed by (namespace, identifier). Implementations must
    treat an expired window as absent.
    """

    @abstractmethod
    async def get(self, namespace: str, identifier: str) -> Optional[RateLimitWindow]:
        """
        Fetch the live window for a key.

        Args:
            namespace: Counter family (e.g. 'auth')
            identifier: Caller key (user id, IP address)

        Returns:
            The window if present and not expired, None otherwise

        Raises:
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    async def set(self, window: RateLimitWindow, ttl_seconds: float) -> None:
        """
        Store a window, replacing any previous one for the same key.

        Args:
            window: The window to store
            ttl_seconds: Seconds from now after which the window expires

        Raises:
            StorageError: If the backend cannot be written
        """
        pass

    @abstractmethod
    async def delete(self, namespace: str, identifier: str) -> bool:
        """
        Remove the window for a key.

        Returns:
            True if a window was removed
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every window."""
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """
        Remove expired windows.

        Returns:
            Number of windows removed
        """
        pass

    @abstractmethod
    async def size(self) -> int:
        """Number of stored windows, expired ones included."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event.

        Args:
            event: The event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID.

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
        event_type: Optional[str] = None,
    ) -> list[AuditEvent]:
        """
        Get recent audit events.

        Args:
            limit: Maximum number of events
            event_type: Filter by event type

        Returns:
            List of events, most recent first
        """
        pass


# =============================================================================
# Exceptions
# =============================================================================

class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Failed to reach the storage backend."""
    pass
