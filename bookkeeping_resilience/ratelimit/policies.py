"""
Rate limit presets and the endpoint-to-preset mapping used for
inbound API requests.
"""

from bookkeeping_resilience.models.resilience import RateLimitConfig


class RateLimitPolicies:
    """Named limits per endpoint family (requests per 60 seconds)."""

    AUTH = RateLimitConfig(namespace="auth", max_requests=5, window_seconds=60)
    API = RateLimitConfig(namespace="api", max_requests=100, window_seconds=60)
    READ = RateLimitConfig(namespace="read", max_requests=200, window_seconds=60)
    WRITE = RateLimitConfig(namespace="write", max_requests=50, window_seconds=60)
    UPLOAD = RateLimitConfig(namespace="upload", max_requests=10, window_seconds=60)
    REPORTS = RateLimitConfig(namespace="reports", max_requests=20, window_seconds=60)


_WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def get_rate_limit_config(method: str, path: str) -> RateLimitConfig:
    """
    Pick the limit for an inbound request.

    Path families win over methods: /api/auth, /api/upload, then
    /api/reports and /api/analytics. Otherwise writes get WRITE,
    GET gets READ, anything else API.
    """
    method = method.upper()

    if path.startswith("/api/auth"):
        return RateLimitPolicies.AUTH
    if path.startswith("/api/upload"):
        return RateLimitPolicies.UPLOAD
    if path.startswith(("/api/reports", "/api/analytics")):
        return RateLimitPolicies.REPORTS
    if method in _WRITE_METHODS:
        return RateLimitPolicies.WRITE
    if method == "GET":
        return RateLimitPolicies.READ
    return RateLimitPolicies.API
