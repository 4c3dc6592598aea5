"""Circuit breakers and their registry."""

from bookkeeping_resilience.circuit.breaker import CircuitBreaker, CircuitEvent
from bookkeeping_resilience.circuit.registry import CircuitBreakerRegistry

__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CircuitEvent"]
