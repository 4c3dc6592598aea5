"""Fixed-window rate limiting."""

from bookkeeping_resilience.ratelimit.limiter import RateLimiter
from bookkeeping_resilience.ratelimit.policies import (
    RateLimitPolicies,
    get_rate_limit_config,
)

__all__ = ["RateLimitPolicies", "RateLimiter", "get_rate_limit_config"]
