"""
Tests for the fixed-window rate limiter and its in-memory store.
"""

import asyncio

import pytest

from bookkeeping_resilience.audit import AuditLogger
from bookkeeping_resilience.errors import RateLimitExceededError
from bookkeeping_resilience.models.audit import AuditEventType
from bookkeeping_resilience.models.resilience import RateLimitConfig, RateLimitWindow
from bookkeeping_resilience.ratelimit import (
    RateLimitPolicies,
    RateLimiter,
    get_rate_limit_config,
)
from bookkeeping_resilience.services.storage import (
    InMemoryAuditStorage,
    InMemoryRateLimitStore,
    RateLimitStore,
    StorageConnectionError,
)


LOGIN_LIMIT = RateLimitConfig(namespace="auth", max_requests=5, window_seconds=60)


class BrokenStore(RateLimitStore):
    """A store whose backend is unreachable."""

    async def get(self, namespace, identifier):
        raise StorageConnectionError("redis unreachable")

    async def set(self, window, ttl_seconds):
        raise StorageConnectionError("redis unreachable")

    async def delete(self, namespace, identifier):
        raise StorageConnectionError("redis unreachable")

    async def clear(self):
        pass

    async def sweep(self):
        return 0

    async def size(self):
        return 0


class SlowStore(InMemoryRateLimitStore):
    """In-memory store that yields to the event loop on every call."""

    async def get(self, namespace, identifier):
        await asyncio.sleep(0)
        return await super().get(namespace, identifier)

    async def set(self, window, ttl_seconds):
        await asyncio.sleep(0)
        await super().set(window, ttl_seconds)


def make_limiter(clock, store=None, audit_storage=None, **kwargs) -> RateLimiter:
    return RateLimiter(
        store or InMemoryRateLimitStore(clock=clock),
        clock=clock,
        audit_logger=AuditLogger(audit_storage),
        **kwargs,
    )


class TestFixedWindow:
    """Tests for counting within and across windows."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_denies(self, clock):
        """Test calls 1-5 allowed, call 6 denied with retry_after."""
        limiter = make_limiter(clock)

        remaining = []
        for _ in range(5):
            result = await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)
            assert result.allowed
            remaining.append(result.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        clock.advance(10)
        denied = await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.retry_after == 50
        assert denied.reset_at == 1_060.0
        assert denied.limit == 5

    @pytest.mark.asyncio
    async def test_new_window_after_expiry(self, clock):
        """Test that the count restarts once the window has elapsed."""
        limiter = make_limiter(clock)
        for _ in range(6):
            await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        clock.advance(61)
        result = await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        assert result.allowed
        assert result.remaining == 4
        assert result.reset_at == clock.now() + 60

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, clock):
        """Test that one caller's count does not affect another."""
        limiter = make_limiter(clock)
        for _ in range(6):
            await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        result = await limiter.check_rate_limit("auth", "10.0.0.8", LOGIN_LIMIT)
        assert result.allowed

    @pytest.mark.asyncio
    async def test_denied_requests_are_counted(self, clock):
        """Test that requests over the limit still increment the counter."""
        limiter = make_limiter(clock)
        for _ in range(8):
            await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        stats = await limiter.get_rate_limit_stats("10.0.0.7", LOGIN_LIMIT)
        assert stats.count == 8
        assert stats.remaining == 0

    @pytest.mark.asyncio
    async def test_concurrent_checks_lose_no_updates(self, clock):
        """Test that concurrent checks on one key are serialized."""
        limiter = make_limiter(clock, store=SlowStore(clock=clock))
        limit = RateLimitConfig(namespace="api", max_requests=10, window_seconds=60)

        results = await asyncio.gather(*(
            limiter.check_rate_limit("api", "user-1", limit) for _ in range(20)
        ))

        assert sum(1 for r in results if r.allowed) == 10
        stats = await limiter.get_rate_limit_stats("user-1", limit)
        assert stats.count == 20


class TestAbuseAndFailures:
    """Tests for abuse reporting, fail-open and the enabled switch."""

    @pytest.mark.asyncio
    async def test_abuse_event_once_per_window(self, clock):
        """Test that crossing twice the limit is audited once."""
        audit = InMemoryAuditStorage()
        limiter = make_limiter(clock, audit_storage=audit)
        limit = RateLimitConfig(namespace="auth", max_requests=2, window_seconds=60)

        for _ in range(8):
            await limiter.check_rate_limit("auth", "10.0.0.7", limit)

        abuse = await audit.get_recent_events(event_type=AuditEventType.RATE_LIMIT_ABUSE.value)
        assert len(abuse) == 1
        assert abuse[0].entity_id == "auth:10.0.0.7"
        assert abuse[0].details["count"] == 5

    @pytest.mark.asyncio
    async def test_denials_are_audited(self, clock):
        """Test that every denied request writes a rate_limit_exceeded event."""
        audit = InMemoryAuditStorage()
        limiter = make_limiter(clock, audit_storage=audit)

        for _ in range(7):
            await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        exceeded = await audit.get_recent_events(
            event_type=AuditEventType.RATE_LIMIT_EXCEEDED.value
        )
        assert len(exceeded) == 2
        assert {event.details["count"] for event in exceeded} == {6, 7}
        assert all(event.entity_id == "auth:10.0.0.7" for event in exceeded)
        assert all(event.details["limit"] == 5 for event in exceeded)

    @pytest.mark.asyncio
    async def test_fails_open_when_store_breaks(self, clock):
        """Test that store errors allow the request with the full limit."""
        audit = InMemoryAuditStorage()
        limiter = make_limiter(clock, store=BrokenStore(), audit_storage=audit)

        result = await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        assert result.allowed
        assert result.remaining == 5
        assert result.retry_after == 0
        assert result.reset_at == clock.now() + 60
        failures = await audit.get_recent_events(
            event_type=AuditEventType.RATE_LIMIT_STORE_FAILURE.value
        )
        assert len(failures) == 1
        assert "redis unreachable" in failures[0].error_message

    @pytest.mark.asyncio
    async def test_disabled_limiter_always_allows(self, clock):
        """Test the enabled switch."""
        limiter = make_limiter(clock, enabled=False)
        for _ in range(10):
            result = await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)
            assert result.allowed
            assert result.remaining == 5
        assert not await limiter.is_rate_limited("10.0.0.7", LOGIN_LIMIT)

    @pytest.mark.asyncio
    async def test_enforce_raises_when_denied(self, clock):
        """Test that enforce turns a denial into RateLimitExceededError."""
        limiter = make_limiter(clock)
        for _ in range(5):
            await limiter.enforce("auth", "10.0.0.7", LOGIN_LIMIT)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.enforce("auth", "10.0.0.7", LOGIN_LIMIT)
        assert exc_info.value.retry_after == 60
        assert exc_info.value.identifier == "10.0.0.7"


class TestAdminHelpers:
    """Tests for is_rate_limited, reset and stats."""

    @pytest.mark.asyncio
    async def test_is_rate_limited_is_read_only(self, clock):
        """Test that is_rate_limited does not count a request."""
        limiter = make_limiter(clock)
        for _ in range(4):
            await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        assert not await limiter.is_rate_limited("10.0.0.7", LOGIN_LIMIT)
        assert not await limiter.is_rate_limited("10.0.0.7", LOGIN_LIMIT)

        await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)
        assert await limiter.is_rate_limited("10.0.0.7", LOGIN_LIMIT)

    @pytest.mark.asyncio
    async def test_reset_rate_limit(self, clock):
        """Test that an admin reset gives the caller a fresh window."""
        audit = InMemoryAuditStorage()
        limiter = make_limiter(clock, audit_storage=audit)
        for _ in range(6):
            await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)

        assert await limiter.reset_rate_limit("10.0.0.7", LOGIN_LIMIT) is True
        result = await limiter.check_rate_limit("auth", "10.0.0.7", LOGIN_LIMIT)
        assert result.allowed
        assert result.remaining == 4
        resets = await audit.get_recent_events(event_type=AuditEventType.RATE_LIMIT_RESET.value)
        assert len(resets) == 1

    @pytest.mark.asyncio
    async def test_stats_for_unknown_caller(self, clock):
        """Test stats when no window exists."""
        limiter = make_limiter(clock)
        stats = await limiter.get_rate_limit_stats("nobody", LOGIN_LIMIT)
        assert stats.count == 0
        assert stats.remaining == 5
        assert stats.reset_at is None

    @pytest.mark.asyncio
    async def test_check_request_uses_endpoint_preset(self, clock):
        """Test that inbound requests are limited by their endpoint family."""
        limiter = make_limiter(clock)
        result = await limiter.check_request("POST", "/api/auth/login", "10.0.0.7")
        assert result.limit == RateLimitPolicies.AUTH.max_requests
        assert result.remaining == 4

        stats = await limiter.get_rate_limit_stats("10.0.0.7", RateLimitPolicies.AUTH)
        assert stats.count == 1


class TestEndpointPresets:
    """Tests for get_rate_limit_config."""

    def test_path_families(self):
        """Test that path families win over methods."""
        assert get_rate_limit_config("POST", "/api/auth/login") == RateLimitPolicies.AUTH
        assert get_rate_limit_config("POST", "/api/upload/bill") == RateLimitPolicies.UPLOAD
        assert get_rate_limit_config("GET", "/api/reports/monthly") == RateLimitPolicies.REPORTS
        assert get_rate_limit_config("GET", "/api/analytics/spend") == RateLimitPolicies.REPORTS

    def test_methods(self):
        """Test method-based fallbacks."""
        assert get_rate_limit_config("delete", "/api/bills/1") == RateLimitPolicies.WRITE
        assert get_rate_limit_config("GET", "/api/bills") == RateLimitPolicies.READ
        assert get_rate_limit_config("OPTIONS", "/api/bills") == RateLimitPolicies.API


class TestInMemoryRateLimitStore:
    """Tests for expiry and capacity sweeping."""

    @pytest.mark.asyncio
    async def test_expired_window_is_purged_on_read(self, clock):
        """Test that reads past the ttl return None and drop the window."""
        store = InMemoryRateLimitStore(clock=clock)
        window = RateLimitWindow(
            namespace="api", identifier="u1", window_start=clock.now(), count=1, window_seconds=60
        )
        await store.set(window, ttl_seconds=60)

        clock.advance(60)
        assert await store.get("api", "u1") == window
        clock.advance(1)
        assert await store.get("api", "u1") is None
        assert await store.size() == 0

    @pytest.mark.asyncio
    async def test_sweep_before_insert_when_full(self, clock):
        """Test that inserting into a full store sweeps expired windows."""
        store = InMemoryRateLimitStore(clock=clock, max_size=2)
        for identifier in ("u1", "u2"):
            await store.set(
                RateLimitWindow(
                    namespace="api",
                    identifier=identifier,
                    window_start=clock.now(),
                    count=1,
                    window_seconds=10,
                ),
                ttl_seconds=10,
            )

        clock.advance(11)
        await store.set(
            RateLimitWindow(
                namespace="api", identifier="u3", window_start=clock.now(), count=1, window_seconds=10
            ),
            ttl_seconds=10,
        )

        assert await store.size() == 1
        assert await store.get("api", "u3") is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
