"""
Circuit Breaker Registry

Creates one breaker per name on first use and hands the same instance
back afterwards. The registry is an ordinary object owned by the
composition root, so tests get a fresh one each time.
"""

import threading
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from bookkeeping_resilience.circuit.breaker import CircuitBreaker
from bookkeeping_resilience.clock import Clock, SystemClock
from bookkeeping_resilience.models.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerStats,
)


T = TypeVar("T")


class CircuitBreakerRegistry:
    """
    Named circuit breakers sharing a clock and a default config.

    Args:
        default_config: Config for breakers created without one
        clock: Clock handed to every breaker
        on_create: Called with each newly created breaker
                   (used to attach listeners)
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Optional[Clock] = None,
        on_create: Optional[Callable[[CircuitBreaker], Any]] = None,
    ):
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._on_create = on_create
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self._logger = structlog.get_logger(__name__)

    def get(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """
        Get the breaker called `name`, creating it if needed.

        `config` only applies when the breaker is created.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is not None:
                return breaker
            breaker = CircuitBreaker(
                name,
                config or self._default_config,
                clock=self._clock,
            )
            self._breakers[name] = breaker

        self._logger.debug("circuit_breaker_created", breaker=name)
        if self._on_create is not None:
            self._on_create(breaker)
        return breaker

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._breakers.pop(name, None) is not None

    def get_all(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def get_all_stats(self) -> dict[str, CircuitBreakerStats]:
        return {name: breaker.get_stats() for name, breaker in self.get_all().items()}

    def reset_all(self) -> None:
        """Reset every breaker to CLOSED."""
        for breaker in self.get_all().values():
            breaker.reset()

    def clear(self) -> None:
        """Forget every breaker."""
        with self._lock:
            self._breakers.clear()

    async def execute(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        config: Optional[CircuitBreakerConfig] = None,
    ) -> T:
        """Run `operation` through the breaker called `name`."""
        return await self.get(name, config).execute(operation)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)
