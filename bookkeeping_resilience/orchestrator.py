"""
Composition root for the resilience layer.

Builds one registry, retry engine, rate limiter and client from
settings and wires them to a shared audit logger. Nothing in the
package is a module-level singleton; everything is created here (or by
tests) and passed down.

DESIGN DECISION: Circuit transitions are written to the audit trail
from a breaker listener. Breaker listeners are synchronous, so the
audit write is scheduled on the running event loop.
"""

import asyncio
from typing import NamedTuple, Optional

import structlog

from bookkeeping_resilience.audit import AuditLogger, configure_logging
from bookkeeping_resilience.circuit import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitEvent,
)
from bookkeeping_resilience.client import (
    AuthHeaderProvider,
    Fetcher,
    ResilientClient,
)
from bookkeeping_resilience.clock import Clock, SystemClock
from bookkeeping_resilience.config import Settings, get_settings
from bookkeeping_resilience.models.resilience import StateTransition
from bookkeeping_resilience.ratelimit import RateLimiter
from bookkeeping_resilience.retry import RetryEngine
from bookkeeping_resilience.services.http import HttpxFetcher
from bookkeeping_resilience.services.storage import (
    AuditStorageInterface,
    InMemoryRateLimitStore,
)


logger = structlog.get_logger(__name__)


class ResilienceComponents(NamedTuple):
    """Everything create_resilience_components builds."""
    audit_logger: AuditLogger
    registry: CircuitBreakerRegistry
    retry_engine: RetryEngine
    rate_limiter: RateLimiter
    client: ResilientClient
    audit_bridge: "CircuitAuditBridge"
    fetcher: Fetcher

    async def aclose(self) -> None:
        """Flush pending circuit audit writes and close the fetcher's connections."""
        await self.audit_bridge.drain()
        close = getattr(self.fetcher, "aclose", None)
        if close is not None:
            await close()


class CircuitAuditBridge:
    """
    Writes circuit breaker transitions to the audit trail.

    Attach with registry on_create; pending writes can be awaited
    with drain() (on shutdown, or in tests).
    """

    def __init__(self, audit_logger: AuditLogger):
        self._audit_logger = audit_logger
        self._pending: set[asyncio.Task] = set()

    def attach(self, breaker: CircuitBreaker) -> None:
        breaker.on(
            CircuitEvent.STATE_CHANGE,
            lambda transition: self._record(breaker.name, transition),
        )

    def _record(self, breaker_name: str, transition: StateTransition) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Manual open()/close() outside an event loop
            logger.info(
                "circuit_transition_not_audited",
                breaker=breaker_name,
                to_state=transition.to_state.value,
            )
            return
        task = loop.create_task(
            self._audit_logger.log_circuit_state_change(breaker_name, transition)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending)


def create_resilience_components(
    fetcher: Optional[Fetcher] = None,
    *,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    auth_headers: Optional[AuthHeaderProvider] = None,
) -> ResilienceComponents:
    """
    Factory function to create all components.

    Args:
        fetcher: Transport for the client; defaults to an HttpxFetcher
                 pointed at API_CLIENT_SERVICE_URL
        settings: Defaults to get_settings()
        clock: Defaults to the system clock
        audit_storage: Persistent audit backend (local logging only if None)
        auth_headers: Provider of authorization headers for the client

    Returns:
        ResilienceComponents(audit_logger, registry, retry_engine,
                             rate_limiter, client, audit_bridge, fetcher)
    """
    settings = settings or get_settings()
    app_settings = settings.app
    configure_logging(app_settings.effective_log_level, not app_settings.console_logs)

    clock = clock or SystemClock()
    audit_logger = AuditLogger(audit_storage)
    bridge = CircuitAuditBridge(audit_logger)

    breaker_config = settings.circuit_breaker.to_config()
    registry = CircuitBreakerRegistry(breaker_config, clock=clock, on_create=bridge.attach)

    retry_policy = settings.retry.to_policy()
    retry_engine = RetryEngine(retry_policy)

    rate_limit_settings = settings.rate_limit
    rate_limiter = RateLimiter(
        InMemoryRateLimitStore(clock=clock, max_size=rate_limit_settings.store_capacity),
        clock=clock,
        audit_logger=audit_logger,
        enabled=rate_limit_settings.enabled,
    )

    api_settings = settings.api_client
    if fetcher is None:
        client_kwargs = {}
        if api_settings.service_url:
            client_kwargs["base_url"] = api_settings.service_url
        fetcher = HttpxFetcher(**client_kwargs)

    client = ResilientClient(
        fetcher,
        config=api_settings.to_config(
            retry_policy=retry_policy,
            circuit_breaker=breaker_config,
            rate_limit=rate_limit_settings.client_config,
        ),
        registry=registry,
        retry_engine=retry_engine,
        rate_limiter=rate_limiter,
        auth_headers=auth_headers,
        audit_logger=audit_logger,
    )

    logger.info(
        "resilience_components_created",
        environment=app_settings.app_environment,
        retry_preset=settings.retry.preset,
        rate_limiting_enabled=rate_limit_settings.enabled,
    )

    return ResilienceComponents(
        audit_logger=audit_logger,
        registry=registry,
        retry_engine=retry_engine,
        rate_limiter=rate_limiter,
        client=client,
        audit_bridge=bridge,
        fetcher=fetcher,
    )
