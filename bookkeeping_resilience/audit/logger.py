"""
Audit Logger

DESIGN DECISION: Every state change of the protection layer is logged.
When a dependency goes down, the audit trail shows when each breaker
opened, which callers were throttled and which hit the abuse threshold.

The audit logger:
- Is async so it can sit in the request path
- Gracefully handles failures (a broken audit store never breaks a request)
- Supports correlation IDs to trace related events
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from bookkeeping_resilience.models.audit import AuditEvent, AuditEventBuilder
from bookkeeping_resilience.models.resilience import StateTransition
from bookkeeping_resilience.services.storage import AuditStorageInterface


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog on top of the standard library logging module.

    Called once by the composition root. JSON output for production,
    console output for local development.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit storage backend (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_circuit_state_change(
        self,
        breaker_name: str,
        transition: StateTransition,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a circuit breaker transition."""
        event = AuditEventBuilder.circuit_state_changed(
            breaker_name=breaker_name,
            transition=transition,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_rate_limit_exceeded(
        self,
        namespace: str,
        identifier: str,
        count: int,
        limit: int,
        retry_after: int,
    ) -> None:
        """Log a denied request."""
        event = AuditEventBuilder.rate_limit_exceeded(
            namespace=namespace,
            identifier=identifier,
            count=count,
            limit=limit,
            retry_after=retry_after,
        )
        await self.log(event)

    async def log_rate_limit_abuse(
        self,
        namespace: str,
        identifier: str,
        count: int,
        limit: int,
    ) -> None:
        """Log a caller that went past twice its limit."""
        event = AuditEventBuilder.rate_limit_abuse(
            namespace=namespace,
            identifier=identifier,
            count=count,
            limit=limit,
        )
        await self.log(event)

    async def log_rate_limit_store_failure(
        self,
        namespace: str,
        identifier: str,
        error_message: str,
    ) -> None:
        event = AuditEventBuilder.rate_limit_store_failure(
            namespace=namespace,
            identifier=identifier,
            error_message=error_message,
        )
        await self.log(event)

    async def log_rate_limit_reset(self, namespace: str, identifier: str) -> None:
        await self.log(AuditEventBuilder.rate_limit_reset(namespace, identifier))

    async def log_reauthentication(
        self,
        url: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.reauthentication_triggered(url, correlation_id)
        )

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        error_code: Optional[str] = None,
        status: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            error_code=error_code,
            status=status,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a user action (e.g., syncing a bank feed)
    and pass it through all subsequent operations.
    """
    return uuid4()
