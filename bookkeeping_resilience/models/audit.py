"""
Audit Models for the resilience layer

Circuit transitions, rate limit abuse and downstream failures are all
recorded as audit events. They are what an operator reads after an
incident to reconstruct what the protection layer did and why.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from bookkeeping_resilience.models.resilience import StateTransition


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Circuit breaker
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPENED = "circuit_half_opened"
    CIRCUIT_CLOSED = "circuit_closed"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMIT_ABUSE = "rate_limit_abuse"
    RATE_LIMIT_STORE_FAILURE = "rate_limit_store_failure"
    RATE_LIMIT_RESET = "rate_limit_reset"

    # Client
    REAUTHENTICATION_TRIGGERED = "reauthentication_triggered"

    # System events
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of the audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'circuit_breaker', 'rate_limit', 'api')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Key of the entity (breaker name, 'namespace:identifier', resource)"
    )

    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.rate_limit_abuse("auth", "10.0.0.7", 11, 5)
        event = AuditEventBuilder.circuit_state_changed("api-/api/bank", transition)
    """

    _CIRCUIT_EVENT_TYPES = {
        "OPEN": (AuditEventType.CIRCUIT_OPENED, AuditSeverity.WARNING),
        "HALF_OPEN": (AuditEventType.CIRCUIT_HALF_OPENED, AuditSeverity.INFO),
        "CLOSED": (AuditEventType.CIRCUIT_CLOSED, AuditSeverity.INFO),
    }

    @staticmethod
    def circuit_state_changed(
        breaker_name: str,
        transition: StateTransition,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        event_type, severity = AuditEventBuilder._CIRCUIT_EVENT_TYPES[
            transition.to_state.value
        ]
        return AuditEvent(
            event_type=event_type,
            severity=severity,
            entity_type="circuit_breaker",
            entity_id=breaker_name,
            correlation_id=correlation_id,
            description=(
                f"Circuit '{breaker_name}' moved from "
                f"{transition.from_state.value} to {transition.to_state.value}"
            ),
            details={
                "from_state": transition.from_state.value,
                "to_state": transition.to_state.value,
                "failure_count": transition.failure_count,
                "clock_time": transition.timestamp,
            },
        )

    @staticmethod
    def rate_limit_exceeded(
        namespace: str,
        identifier: str,
        count: int,
        limit: int,
        retry_after: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
            severity=AuditSeverity.WARNING,
            entity_type="rate_limit",
            entity_id=f"{namespace}:{identifier}",
            description=f"Rate limit exceeded for {namespace}:{identifier}",
            details={
                "count": count,
                "limit": limit,
                "retry_after": retry_after,
            },
        )

    @staticmethod
    def rate_limit_abuse(
        namespace: str,
        identifier: str,
        count: int,
        limit: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_LIMIT_ABUSE,
            severity=AuditSeverity.CRITICAL,
            entity_type="rate_limit",
            entity_id=f"{namespace}:{identifier}",
            description=(
                f"Possible abuse: {namespace}:{identifier} made {count} requests "
                f"against a limit of {limit}"
            ),
            details={
                "count": count,
                "limit": limit,
                "multiplier": round(count / limit, 2),
            },
        )

    @staticmethod
    def rate_limit_store_failure(
        namespace: str,
        identifier: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_LIMIT_STORE_FAILURE,
            severity=AuditSeverity.ERROR,
            entity_type="rate_limit",
            entity_id=f"{namespace}:{identifier}",
            description="Rate limit store failed; request allowed (fail-open)",
            error_message=error_message,
        )

    @staticmethod
    def rate_limit_reset(namespace: str, identifier: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_LIMIT_RESET,
            entity_type="rate_limit",
            entity_id=f"{namespace}:{identifier}",
            description=f"Rate limit counter reset for {namespace}:{identifier}",
        )

    @staticmethod
    def reauthentication_triggered(
        url: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REAUTHENTICATION_TRIGGERED,
            severity=AuditSeverity.WARNING,
            entity_type="api",
            entity_id=url,
            correlation_id=correlation_id,
            description="Request was unauthorized; re-authentication triggered",
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        error_code: Optional[str] = None,
        status: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            entity_type="api",
            entity_id=service,
            correlation_id=correlation_id,
            description=f"External service error: {service}",
            details={"status": status} if status is not None else {},
            error_code=error_code,
            error_message=error_message,
        )
