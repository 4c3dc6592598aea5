"""
Resilience Models

Pydantic models for circuit breaker state, retry policies and rate
limit windows. Configuration models are frozen: a breaker or limiter
never sees its config change underneath it.

All durations are in seconds. Timestamps are readings of the injected
Clock (seconds).
"""

import math
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# =============================================================================
# ENUMS
# =============================================================================

class CircuitState(str, Enum):
    """
    State of a circuit breaker.

    CLOSED lets calls through, OPEN rejects them, HALF_OPEN lets a
    limited number of probe calls through to test recovery.
    """
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


# =============================================================================
# CIRCUIT BREAKER MODELS
# =============================================================================

class CircuitBreakerConfig(BaseModel):
    """Thresholds and timing for one circuit breaker."""
    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Failures (or failure ratio numerator) that open the circuit"
    )
    success_threshold: int = Field(
        default=2,
        ge=1,
        description="Consecutive half-open successes needed to close the circuit"
    )
    timeout: float = Field(
        default=60.0,
        ge=0.0,
        description="Seconds to stay OPEN before allowing a probe"
    )
    volume_threshold: int = Field(
        default=10,
        ge=1,
        description="Requests needed before the failure ratio is used"
    )
    half_open_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum concurrent probe calls while HALF_OPEN"
    )
    operation_timeout: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Per-call timeout in seconds (None = unbounded)"
    )

    @property
    def failure_rate_threshold(self) -> float:
        """Failure ratio that opens the circuit once volume is reached."""
        return self.failure_threshold / self.volume_threshold


class StateTransition(BaseModel):
    """One entry of a breaker's state change log."""
    model_config = ConfigDict(frozen=True)

    from_state: CircuitState
    to_state: CircuitState
    timestamp: float = Field(..., description="Clock reading at the transition")
    failure_count: int = Field(..., ge=0)


class CircuitBreakerStats(BaseModel):
    """
    Point-in-time snapshot of a circuit breaker.

    total_requests always equals
    total_successes + total_failures + total_rejections.
    """

    name: str
    state: CircuitState
    failure_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    request_count: int = Field(default=0, ge=0)
    last_failure_time: Optional[float] = None
    next_attempt_time: Optional[float] = None
    config: CircuitBreakerConfig

    total_requests: int = Field(default=0, ge=0)
    total_successes: int = Field(default=0, ge=0)
    total_failures: int = Field(default=0, ge=0)
    total_rejections: int = Field(default=0, ge=0)
    total_state_changes: int = Field(default=0, ge=0)
    state_changes: list[StateTransition] = Field(default_factory=list)


# =============================================================================
# RETRY MODELS
# =============================================================================

DEFAULT_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

DEFAULT_RETRYABLE_ERROR_PATTERNS = frozenset({
    "NetworkError",
    "TimeoutError",
    "AbortError",
    "ETIMEDOUT",
    "ECONNRESET",
    "ENOTFOUND",
    "ECONNREFUSED",
})


class RetryPolicy(BaseModel):
    """
    How many times to try an operation and how long to wait in between.

    Delay before retry k is min(base_delay * exponential_base ** (k - 1),
    max_delay), perturbed by up to 10% when jitter is on.
    """
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total attempts including the first one"
    )
    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay before the first retry, in seconds"
    )
    max_delay: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single backoff delay, in seconds"
    )
    exponential_base: float = Field(
        default=2.0,
        ge=1.0,
        description="Growth factor between consecutive delays"
    )
    jitter: bool = Field(
        default=True,
        description="Perturb each delay by up to +/-10%"
    )
    timeout: Optional[float] = Field(
        default=60.0,
        gt=0.0,
        description="Bound for the whole attempt sequence, in seconds"
    )
    retryable_statuses: frozenset[int] = Field(
        default=DEFAULT_RETRYABLE_STATUSES,
        description="HTTP statuses worth retrying"
    )
    retryable_error_patterns: frozenset[str] = Field(
        default=DEFAULT_RETRYABLE_ERROR_PATTERNS,
        description="Case-insensitive fragments of error codes, names or messages worth retrying"
    )

    @field_validator('retryable_error_patterns')
    @classmethod
    def patterns_not_blank(cls, v: frozenset[str]) -> frozenset[str]:
        """An empty pattern would match every error."""
        if any(not pattern.strip() for pattern in v):
            raise ValueError("Retryable error patterns cannot be blank")
        return v

    @model_validator(mode='after')
    def validate_delays(self) -> 'RetryPolicy':
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay cannot be smaller than base_delay")
        return self


class RetryPolicies:
    """Named presets for common call profiles."""

    FAST = RetryPolicy(max_attempts=2, base_delay=0.5, max_delay=2.0, timeout=10.0)
    STANDARD = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, timeout=30.0)
    AGGRESSIVE = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0, timeout=120.0)
    PATIENT = RetryPolicy(max_attempts=3, base_delay=5.0, max_delay=60.0, timeout=300.0)
    NO_RETRY = RetryPolicy(max_attempts=1, timeout=30.0)

    @classmethod
    def by_name(cls, name: str) -> RetryPolicy:
        """Look up a preset by case-insensitive name (e.g. 'standard')."""
        policy = getattr(cls, name.strip().upper(), None)
        if not isinstance(policy, RetryPolicy):
            raise ValueError(f"Unknown retry policy preset: {name}")
        return policy


DEFAULT_RETRY_POLICY = RetryPolicy()


def create_retry_policy(**overrides) -> RetryPolicy:
    """Build a validated policy from the defaults plus overrides."""
    return RetryPolicy(**{**DEFAULT_RETRY_POLICY.model_dump(), **overrides})


# =============================================================================
# RATE LIMIT MODELS
# =============================================================================

class RateLimitConfig(BaseModel):
    """A fixed-window limit: max_requests per window_seconds."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    namespace: str = Field(
        default="api",
        min_length=1,
        description="Logical counter family (e.g. 'auth', 'api')"
    )
    max_requests: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1)


class RateLimitWindow(BaseModel):
    """Counter for one (namespace, identifier) inside one window."""

    namespace: str
    identifier: str
    window_start: float
    count: int = Field(default=0, ge=0)
    window_seconds: float = Field(..., gt=0.0)

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.identifier}"

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_seconds

    def remaining(self, max_requests: int) -> int:
        return max(0, max_requests - self.count)

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets."""
        return max(0, math.ceil(self.reset_at - now))


class RateLimitResult(BaseModel):
    """Outcome of one rate limit check."""

    allowed: bool
    remaining: int = Field(..., ge=0)
    reset_at: float
    retry_after: int = Field(default=0, ge=0)
    limit: int = Field(..., ge=1)


class RateLimitStats(BaseModel):
    """Read-only view of a counter, for admin screens."""

    count: int = Field(default=0, ge=0)
    remaining: int = Field(..., ge=0)
    reset_at: Optional[float] = None
