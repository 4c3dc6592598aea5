"""
API Client Models

Request and configuration models for the resilient API client.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookkeeping_resilience.models.resilience import (
    CircuitBreakerConfig,
    RateLimitConfig,
    RetryPolicies,
    RetryPolicy,
)


class ApiRequest(BaseModel):
    """
    An outgoing request as seen by interceptors and fetchers.

    Interceptors return a modified copy (model_copy(update=...)) rather
    than mutating the request in place.
    """

    url: str = Field(..., min_length=1)
    method: str = Field(default="GET")
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @field_validator('method')
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().upper()


class ClientConfig(BaseModel):
    """Configuration for a ResilientClient."""
    model_config = ConfigDict(frozen=True)

    base_url: str = Field(
        default="/api",
        description="Prefix joined to relative endpoints"
    )
    timeout: Optional[float] = Field(
        default=30.0,
        gt=0.0,
        description="Outer per-request bound as perceived by the caller, in seconds"
    )
    retry_policy: RetryPolicy = Field(
        default=RetryPolicies.STANDARD,
        description="Policy used when a call does not pass its own"
    )
    use_circuit_breaker: bool = Field(default=True)
    circuit_breaker: CircuitBreakerConfig = Field(
        default_factory=lambda: CircuitBreakerConfig(failure_threshold=5, timeout=60.0)
    )
    resource_depth: int = Field(
        default=3,
        ge=1,
        description="Path segments (counting the leading empty one) that name a resource"
    )
    rate_limit: Optional[RateLimitConfig] = Field(
        default=None,
        description="Client-side limit consulted before each request"
    )
    rate_limit_identifier: str = Field(
        default="client",
        description="Identifier used for client-side rate limiting"
    )
