"""Configuration package."""

from bookkeeping_resilience.config.settings import (
    ApiClientSettings,
    AppSettings,
    CircuitBreakerSettings,
    RateLimitSettings,
    RetrySettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "ApiClientSettings",
    "AppSettings",
    "CircuitBreakerSettings",
    "RateLimitSettings",
    "RetrySettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
