"""
Tests for the resilience layer

Test strategy:
1. Unit tests for individual components (models, breaker, limiter, retry)
2. Integration tests for the client (with a mocked HTTP transport)
3. No real network calls in tests
"""

import pytest
from uuid import uuid4

from bookkeeping_resilience.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from bookkeeping_resilience.models.api import ApiRequest, ClientConfig
from bookkeeping_resilience.models.resilience import (
    DEFAULT_RETRY_POLICY,
    CircuitBreakerConfig,
    CircuitState,
    RateLimitConfig,
    RateLimitWindow,
    RetryPolicies,
    RetryPolicy,
    StateTransition,
    create_retry_policy,
)


class TestResilienceModels:
    """Tests for breaker, retry and rate limit models."""

    def test_circuit_breaker_defaults(self):
        """Test CircuitBreakerConfig defaults."""
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.success_threshold == 2
        assert config.timeout == 60.0
        assert config.volume_threshold == 10
        assert config.half_open_max_attempts == 3
        assert config.operation_timeout is None
        assert config.failure_rate_threshold == 0.5

    def test_circuit_breaker_config_is_frozen(self):
        """Test that configs cannot change after creation."""
        config = CircuitBreakerConfig()
        with pytest.raises(ValueError):
            config.failure_threshold = 1

    def test_circuit_breaker_rejects_zero_threshold(self):
        """Test threshold bounds."""
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)

    def test_retry_policy_defaults(self):
        """Test RetryPolicy defaults."""
        assert DEFAULT_RETRY_POLICY.max_attempts == 3
        assert DEFAULT_RETRY_POLICY.base_delay == 1.0
        assert DEFAULT_RETRY_POLICY.max_delay == 30.0
        assert DEFAULT_RETRY_POLICY.jitter is True
        assert DEFAULT_RETRY_POLICY.timeout == 60.0
        assert 429 in DEFAULT_RETRY_POLICY.retryable_statuses
        assert 400 not in DEFAULT_RETRY_POLICY.retryable_statuses
        assert "ECONNRESET" in DEFAULT_RETRY_POLICY.retryable_error_patterns

    def test_retry_policy_max_delay_validation(self):
        """Test that max_delay cannot be below base_delay."""
        with pytest.raises(ValueError, match="max_delay cannot be smaller than base_delay"):
            RetryPolicy(base_delay=5.0, max_delay=1.0)

    def test_retry_policy_rejects_blank_pattern(self):
        """Test that an empty pattern is refused."""
        with pytest.raises(ValueError):
            create_retry_policy(retryable_error_patterns={"ECONNRESET", " "})

    def test_create_retry_policy_overrides(self):
        """Test building a policy from defaults plus overrides."""
        policy = create_retry_policy(max_attempts=7, jitter=False)
        assert policy.max_attempts == 7
        assert policy.jitter is False
        assert policy.base_delay == DEFAULT_RETRY_POLICY.base_delay

    def test_retry_presets(self):
        """Test preset values and lookup by name."""
        assert RetryPolicies.FAST.max_attempts == 2
        assert RetryPolicies.FAST.timeout == 10.0
        assert RetryPolicies.AGGRESSIVE.max_attempts == 5
        assert RetryPolicies.PATIENT.base_delay == 5.0
        assert RetryPolicies.NO_RETRY.max_attempts == 1
        assert RetryPolicies.by_name("Standard") is RetryPolicies.STANDARD
        with pytest.raises(ValueError):
            RetryPolicies.by_name("reckless")

    def test_rate_limit_window_derived_values(self):
        """Test reset_at, remaining and retry_after."""
        window = RateLimitWindow(
            namespace="auth",
            identifier="10.0.0.7",
            window_start=1000.0,
            count=7,
            window_seconds=60,
        )
        assert window.key == "auth:10.0.0.7"
        assert window.reset_at == 1060.0
        assert window.remaining(5) == 0
        assert window.remaining(10) == 3
        assert window.retry_after(1010.5) == 50
        assert window.retry_after(1070.0) == 0

    def test_rate_limit_config_bounds(self):
        """Test that limits must be positive."""
        with pytest.raises(ValueError):
            RateLimitConfig(namespace="api", max_requests=0, window_seconds=60)
        with pytest.raises(ValueError):
            RateLimitConfig(namespace="api", max_requests=10, window_seconds=0)


class TestApiModels:
    """Tests for client models."""

    def test_api_request_normalizes_method(self):
        """Test that methods are upper-cased."""
        request = ApiRequest(url="/api/bills", method=" post ")
        assert request.method == "POST"
        assert request.headers == {}

    def test_client_config_defaults(self):
        """Test ClientConfig defaults."""
        config = ClientConfig()
        assert config.base_url == "/api"
        assert config.timeout == 30.0
        assert config.retry_policy == RetryPolicies.STANDARD
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.timeout == 60.0
        assert config.rate_limit is None


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation."""
        event = AuditEvent(
            event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
            description="Too many logins",
        )
        assert event.event_id is not None
        assert event.timestamp is not None
        assert event.severity == AuditSeverity.INFO

    def test_circuit_state_changed_builder(self):
        """Test that transitions map to event types and severities."""
        transition = StateTransition(
            from_state=CircuitState.CLOSED,
            to_state=CircuitState.OPEN,
            timestamp=1000.0,
            failure_count=5,
        )
        event = AuditEventBuilder.circuit_state_changed("api-/api/bank", transition)
        assert event.event_type == AuditEventType.CIRCUIT_OPENED
        assert event.severity == AuditSeverity.WARNING
        assert event.entity_id == "api-/api/bank"
        assert event.details["failure_count"] == 5

    def test_rate_limit_abuse_builder(self):
        """Test the abuse event."""
        event = AuditEventBuilder.rate_limit_abuse("auth", "10.0.0.7", count=11, limit=5)
        assert event.event_type == AuditEventType.RATE_LIMIT_ABUSE
        assert event.severity == AuditSeverity.CRITICAL
        assert event.details["multiplier"] == 2.2

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        correlation_id = uuid4()
        event = AuditEventBuilder.external_service_error(
            service="/api/bills",
            error_message="Service Unavailable",
            status=503,
            correlation_id=correlation_id,
        )

        log_dict = event.to_log_dict()

        assert log_dict["event_type"] == "external_service_error"
        assert log_dict["severity"] == "error"
        assert log_dict["entity_id"] == "/api/bills"
        assert log_dict["correlation_id"] == str(correlation_id)
        assert log_dict["details"] == {"status": 503}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
