"""Tests for settings and the composition root."""

import httpx
import pytest
import structlog
from pydantic import ValidationError

from bookkeeping_resilience.config import (
    AppSettings,
    CircuitBreakerSettings,
    RateLimitSettings,
    RetrySettings,
    Settings,
    get_settings,
    validate_all_settings,
)
from bookkeeping_resilience.errors import ApiError
from bookkeeping_resilience.models.audit import AuditEventType
from bookkeeping_resilience.models.resilience import CircuitState, RetryPolicies
from bookkeeping_resilience.orchestrator import create_resilience_components
from bookkeeping_resilience.services.http import HttpxFetcher
from bookkeeping_resilience.services.storage import InMemoryAuditStorage


class TestSettings:
    """Tests for environment-driven configuration."""

    def test_circuit_breaker_settings_from_env(self, monkeypatch):
        """Test CIRCUIT_BREAKER_ variables."""
        monkeypatch.setenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "7")
        monkeypatch.setenv("CIRCUIT_BREAKER_TIMEOUT_SECONDS", "15")

        config = CircuitBreakerSettings().to_config()

        assert config.failure_threshold == 7
        assert config.timeout == 15.0
        assert config.success_threshold == 2

    def test_retry_preset_and_overrides(self, monkeypatch):
        """Test RETRY_ preset selection with an override."""
        monkeypatch.setenv("RETRY_PRESET", "FAST")
        assert RetrySettings().to_policy() is RetryPolicies.FAST

        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "4")
        policy = RetrySettings().to_policy()
        assert policy.max_attempts == 4
        assert policy.timeout == RetryPolicies.FAST.timeout

    def test_unknown_retry_preset(self, monkeypatch):
        """Test that an unknown preset fails validation."""
        monkeypatch.setenv("RETRY_PRESET", "reckless")
        with pytest.raises(ValidationError):
            RetrySettings()

    def test_client_rate_limit_requires_both_values(self, monkeypatch):
        """Test that client-side limiting needs both limit and window."""
        monkeypatch.setenv("RATE_LIMIT_CLIENT_MAX_REQUESTS", "30")
        assert RateLimitSettings().client_config is None

        monkeypatch.setenv("RATE_LIMIT_CLIENT_WINDOW_SECONDS", "60")
        config = RateLimitSettings().client_config
        assert config.max_requests == 30
        assert config.window_seconds == 60

    def test_debug_mode_forces_console_debug_logs(self, monkeypatch):
        """Test that DEBUG_MODE overrides the log level and renderer."""
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("JSON_LOGS", "true")

        app = AppSettings()
        assert app.effective_log_level == "WARNING"
        assert app.console_logs is False

        monkeypatch.setenv("DEBUG_MODE", "true")
        app = AppSettings()
        assert app.effective_log_level == "DEBUG"
        assert app.console_logs is True

    def test_validate_all_settings(self, monkeypatch):
        """Test startup validation reports failures per section."""
        get_settings.cache_clear()
        monkeypatch.setenv("RATE_LIMIT_STORE_CAPACITY", "0")
        try:
            results = validate_all_settings()
        finally:
            get_settings.cache_clear()

        assert results["circuit_breaker"] is True
        assert results["rate_limit"] is False
        assert "rate_limit_error" in results


class TestCreateResilienceComponents:
    """Tests for the composition root."""

    @pytest.mark.asyncio
    async def test_components_are_wired(self, monkeypatch, clock):
        """Test that settings flow into the registry, limiter and client."""
        monkeypatch.setenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "1")
        monkeypatch.setenv("RETRY_PRESET", "no_retry")
        monkeypatch.setenv("JSON_LOGS", "false")

        audit = InMemoryAuditStorage()
        transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"message": "bad"})
        )
        fetcher = HttpxFetcher(httpx.AsyncClient(transport=transport, base_url="https://books.test"))

        components = create_resilience_components(
            fetcher,
            settings=Settings(),
            clock=clock,
            audit_storage=audit,
            auth_headers=lambda: {"Authorization": "Bearer t"},
        )

        assert components.retry_engine.policy is RetryPolicies.NO_RETRY
        assert components.client.config.retry_policy is RetryPolicies.NO_RETRY

        with pytest.raises(ApiError):
            await components.client.get("/bills")
        await components.audit_bridge.drain()

        breaker = components.registry.get("api-/api/bills")
        assert breaker.state == CircuitState.OPEN
        opened = await audit.get_recent_events(event_type=AuditEventType.CIRCUIT_OPENED.value)
        assert len(opened) == 1
        assert opened[0].entity_id == "api-/api/bills"

        result = await components.rate_limiter.check_request("GET", "/api/bills", "user-1")
        assert result.allowed

    @pytest.mark.asyncio
    async def test_default_fetcher_is_httpx_and_closable(self, monkeypatch, clock):
        """Test that the built HttpxFetcher is exposed and closed by aclose."""
        monkeypatch.setenv("API_CLIENT_SERVICE_URL", "https://books.example.com")
        components = create_resilience_components(settings=Settings(), clock=clock)

        assert isinstance(components.fetcher, HttpxFetcher)
        assert components.client._fetcher is components.fetcher
        assert not components.fetcher._client.is_closed

        await components.aclose()

        assert components.fetcher._client.is_closed

    def test_debug_mode_selects_console_renderer(self, monkeypatch, clock):
        """Test that debug mode configures console log rendering."""
        monkeypatch.setenv("DEBUG_MODE", "true")
        monkeypatch.setenv("JSON_LOGS", "true")

        create_resilience_components(
            lambda request: None,
            settings=Settings(),
            clock=clock,
        )

        renderer = structlog.get_config()["processors"][-1]
        assert isinstance(renderer, structlog.dev.ConsoleRenderer)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
