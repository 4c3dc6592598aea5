"""
Storage Services Package

Abstract interfaces for rate limit counters and audit events, with
in-memory implementations. Designed to be swappable.
"""

from bookkeeping_resilience.services.storage.interface import (
    AuditStorageInterface,
    RateLimitStore,
    StorageConnectionError,
    StorageError,
)
from bookkeeping_resilience.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryRateLimitStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "RateLimitStore",
    # Exceptions
    "StorageConnectionError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryRateLimitStore",
]
