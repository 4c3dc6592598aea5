"""
Configuration Management for the resilience layer

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here. Every threshold
that decides when a breaker opens or a caller is throttled can be read
from one file, and all of it is validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bookkeeping_resilience.models.api import ClientConfig
from bookkeeping_resilience.models.resilience import (
    CircuitBreakerConfig,
    RateLimitConfig,
    RetryPolicies,
    RetryPolicy,
)


class CircuitBreakerSettings(BaseSettings):
    """Default thresholds for circuit breakers created by the registry."""

    model_config = SettingsConfigDict(
        env_prefix="CIRCUIT_BREAKER_",
        extra="ignore"
    )

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    timeout_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Cooldown before an OPEN circuit allows a probe"
    )
    volume_threshold: int = Field(default=10, ge=1)
    half_open_max_attempts: int = Field(default=3, ge=1)
    operation_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Per-call timeout (unset = unbounded)"
    )

    def to_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            timeout=self.timeout_seconds,
            volume_threshold=self.volume_threshold,
            half_open_max_attempts=self.half_open_max_attempts,
            operation_timeout=self.operation_timeout_seconds,
        )


class RetrySettings(BaseSettings):
    """Default retry policy: a named preset plus optional overrides."""

    model_config = SettingsConfigDict(
        env_prefix="RETRY_",
        extra="ignore"
    )

    preset: str = Field(
        default="standard",
        description="One of fast, standard, aggressive, patient, no_retry"
    )
    max_attempts: Optional[int] = Field(default=None, ge=1)
    base_delay_seconds: Optional[float] = Field(default=None, ge=0.0)
    max_delay_seconds: Optional[float] = Field(default=None, ge=0.0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    jitter: Optional[bool] = None

    @field_validator('preset')
    @classmethod
    def validate_preset(cls, v: str) -> str:
        RetryPolicies.by_name(v)
        return v.strip().lower()

    def to_policy(self) -> RetryPolicy:
        overrides = {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay_seconds,
            "max_delay": self.max_delay_seconds,
            "timeout": self.timeout_seconds,
            "jitter": self.jitter,
        }
        base = RetryPolicies.by_name(self.preset)
        values = {k: v for k, v in overrides.items() if v is not None}
        if not values:
            return base
        return RetryPolicy(**{**base.model_dump(), **values})


class RateLimitSettings(BaseSettings):
    """Rate limiter switches and client-side limits."""

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="When false every check is allowed"
    )
    store_capacity: int = Field(
        default=10000,
        ge=1,
        description="Windows held before expired ones are swept"
    )
    # Client-side limiting is off unless both are set
    client_max_requests: Optional[int] = Field(default=None, ge=1)
    client_window_seconds: Optional[int] = Field(default=None, ge=1)

    @property
    def client_config(self) -> Optional[RateLimitConfig]:
        if self.client_max_requests is None or self.client_window_seconds is None:
            return None
        return RateLimitConfig(
            namespace="client",
            max_requests=self.client_max_requests,
            window_seconds=self.client_window_seconds,
        )


class ApiClientSettings(BaseSettings):
    """Resilient API client configuration."""

    model_config = SettingsConfigDict(
        env_prefix="API_CLIENT_",
        extra="ignore"
    )

    base_url: str = Field(
        default="/api",
        description="Path prefix joined to relative endpoints"
    )
    service_url: Optional[str] = Field(
        default=None,
        description="Scheme and host of the backend, e.g. https://books.example.com"
    )
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    use_circuit_breaker: bool = True
    resource_depth: int = Field(default=3, ge=1)

    def to_config(
        self,
        retry_policy: RetryPolicy,
        circuit_breaker: CircuitBreakerConfig,
        rate_limit: Optional[RateLimitConfig] = None,
    ) -> ClientConfig:
        return ClientConfig(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            retry_policy=retry_policy,
            use_circuit_breaker=self.use_circuit_breaker,
            circuit_breaker=circuit_breaker,
            resource_depth=self.resource_depth,
            rate_limit=rate_limit,
        )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (DEBUG level, console logs)"
    )
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(
        default=True,
        description="Render logs as JSON (console rendering when false)"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug_mode else self.log_level

    @property
    def console_logs(self) -> bool:
        return self.debug_mode or not self.json_logs


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        return CircuitBreakerSettings()

    @property
    def retry(self) -> RetrySettings:
        return RetrySettings()

    @property
    def rate_limit(self) -> RateLimitSettings:
        return RateLimitSettings()

    @property
    def api_client(self) -> ApiClientSettings:
        return ApiClientSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus a
    '<setting_name>_error' entry for each failure.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("circuit_breaker", "retry", "rate_limit", "api_client", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
