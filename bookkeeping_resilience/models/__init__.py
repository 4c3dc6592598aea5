"""
Data Models Package

All Pydantic models used by the resilience layer.
"""

from bookkeeping_resilience.models.resilience import (
    DEFAULT_RETRY_POLICY,
    CircuitBreakerConfig,
    CircuitBreakerStats,
    CircuitState,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStats,
    RateLimitWindow,
    RetryPolicies,
    RetryPolicy,
    StateTransition,
    create_retry_policy,
)
from bookkeeping_resilience.models.api import ApiRequest, ClientConfig
from bookkeeping_resilience.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Circuit breaker models
    "CircuitBreakerConfig",
    "CircuitBreakerStats",
    "CircuitState",
    "StateTransition",
    # Retry models
    "DEFAULT_RETRY_POLICY",
    "RetryPolicies",
    "RetryPolicy",
    "create_retry_policy",
    # Rate limit models
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitStats",
    "RateLimitWindow",
    # API models
    "ApiRequest",
    "ClientConfig",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
