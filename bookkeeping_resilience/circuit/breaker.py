"""
Circuit Breaker

Stops calling a downstream dependency once it is clearly failing, and
probes it again after a cooldown.

States:
- CLOSED: calls pass through, failures are counted
- OPEN: calls are rejected immediately with CircuitOpenError
  (or answered by the fallback) until next_attempt_time
- HALF_OPEN: up to half_open_max_attempts probe calls pass through;
  success_threshold successes close the circuit, one failure reopens it

CRITICAL: Every read-check-update of breaker state happens in a
synchronous critical section (no await in between) under an RLock.
Two concurrent calls can therefore never both observe CLOSED and both
decide to open the circuit.
"""

import asyncio
import inspect
import threading
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from bookkeeping_resilience.clock import Clock, SystemClock
from bookkeeping_resilience.errors import (
    AbortedError,
    CircuitOpenError,
    OperationTimeoutError,
)
from bookkeeping_resilience.models.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerStats,
    CircuitState,
    StateTransition,
)


T = TypeVar("T")

Listener = Callable[[Any], Any]
Fallback = Callable[[BaseException], Any]

TRANSITION_HISTORY_LIMIT = 100


class CircuitEvent(str, Enum):
    """Events a breaker emits to its listeners."""
    STATE_CHANGE = "state_change"   # payload: StateTransition
    OPEN = "open"                   # payload: StateTransition
    HALF_OPEN = "half_open"         # payload: StateTransition
    CLOSE = "close"                 # payload: StateTransition
    SUCCESS = "success"             # payload: operation result
    FAILURE = "failure"             # payload: the error
    REJECTED = "rejected"           # payload: CircuitOpenError


_STATE_EVENTS = {
    CircuitState.OPEN: CircuitEvent.OPEN,
    CircuitState.HALF_OPEN: CircuitEvent.HALF_OPEN,
    CircuitState.CLOSED: CircuitEvent.CLOSE,
}


class CircuitBreaker:
    """
    Circuit breaker for one downstream resource.

    Usage:
        breaker = CircuitBreaker("bank-feed", CircuitBreakerConfig(failure_threshold=3))
        statement = await breaker.execute(lambda: bank.fetch_statement(account_id))

    Listeners:
        breaker.on(CircuitEvent.OPEN, lambda t: alert(t))
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Optional[Clock] = None,
        logger: Any = None,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._logger = (logger or structlog.get_logger(__name__)).bind(breaker=name)
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._request_count = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None

        # Probe slots are tied to one HALF_OPEN period
        self._half_open_generation = 0
        self._half_open_in_flight = 0

        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0
        self._total_rejections = 0
        self._total_state_changes = 0
        self._state_changes: deque[StateTransition] = deque(maxlen=TRANSITION_HISTORY_LIMIT)

        self._listeners: dict[CircuitEvent, list[Listener]] = {event: [] for event in CircuitEvent}
        self._fallback: Optional[Fallback] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def get_state(self) -> CircuitState:
        return self.state

    # =========================================================================
    # Listeners and fallback
    # =========================================================================

    def on(self, event: CircuitEvent, listener: Listener) -> "CircuitBreaker":
        """Register a listener. Listener errors are logged, never raised."""
        self._listeners[CircuitEvent(event)].append(listener)
        return self

    def off(self, event: CircuitEvent, listener: Listener) -> "CircuitBreaker":
        listeners = self._listeners[CircuitEvent(event)]
        if listener in listeners:
            listeners.remove(listener)
        return self

    def fallback(self, fn: Optional[Fallback]) -> "CircuitBreaker":
        """
        Register a fallback (sync or async) called with the error.

        It answers rejected calls, and calls whose failure left the
        circuit OPEN. Pass None to remove it.
        """
        self._fallback = fn
        return self

    def _emit(self, event: CircuitEvent, payload: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(payload)
            except Exception:
                self._logger.exception("circuit_listener_failed", event=event.value)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run `operation` through the breaker.

        Args:
            operation: Zero-argument coroutine function
            timeout: Per-call timeout in seconds; defaults to
                     config.operation_timeout

        Raises:
            CircuitOpenError: The call was rejected and no fallback is set
            OperationTimeoutError: The per-call timeout expired
            Whatever `operation` raised
        """
        rejection, probe_generation = self._admit()
        if rejection is not None:
            self._emit(CircuitEvent.REJECTED, rejection)
            if self._fallback is not None:
                return await self._run_fallback(rejection)
            raise rejection

        call_timeout = timeout if timeout is not None else self._config.operation_timeout
        try:
            result = await self._call(operation, call_timeout)
        except (asyncio.CancelledError, AbortedError):
            self._release_probe(probe_generation)
            raise
        except Exception as exc:
            opened = self._record_failure(exc, probe_generation)
            if opened and self._fallback is not None:
                return await self._run_fallback(exc)
            raise

        self._record_success(probe_generation)
        self._emit(CircuitEvent.SUCCESS, result)
        return result

    async def _call(self, operation: Callable[[], Awaitable[T]], timeout: Optional[float]) -> T:
        if timeout is None:
            return await operation()
        try:
            async with asyncio.timeout(timeout) as scope:
                return await operation()
        except TimeoutError as exc:
            if scope.expired():
                raise OperationTimeoutError(timeout, operation=self._name) from exc
            raise

    async def _run_fallback(self, error: BaseException) -> Any:
        self._logger.debug("circuit_fallback_used", error_type=type(error).__name__)
        result = self._fallback(error)
        if inspect.isawaitable(result):
            result = await result
        return result

    # =========================================================================
    # Critical sections
    # =========================================================================

    def _admit(self) -> tuple[Optional[CircuitOpenError], Optional[int]]:
        """
        Decide whether a call may run.

        Returns (rejection, probe_generation). probe_generation is set
        when the call took a HALF_OPEN probe slot.
        """
        with self._lock:
            now = self._clock.now()

            if self._state is CircuitState.OPEN:
                if self._next_attempt_time is not None and now >= self._next_attempt_time:
                    self._transition_to(CircuitState.HALF_OPEN, now)
                else:
                    retry_after = max(0.0, (self._next_attempt_time or now) - now)
                    return self._reject(CircuitState.OPEN, retry_after), None

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self._config.half_open_max_attempts:
                    return self._reject(CircuitState.HALF_OPEN, 0.0), None
                self._half_open_in_flight += 1
                return None, self._half_open_generation

            return None, None

    def _reject(self, state: CircuitState, retry_after: float) -> CircuitOpenError:
        # Caller holds the lock
        self._total_rejections += 1
        self._total_requests += 1
        self._logger.debug("circuit_rejected", state=state.value, retry_after=retry_after)
        return CircuitOpenError(self._name, retry_after=retry_after, state=state.value)

    def _release_probe(self, probe_generation: Optional[int]) -> None:
        if probe_generation is None:
            return
        with self._lock:
            if probe_generation == self._half_open_generation and self._half_open_in_flight > 0:
                self._half_open_in_flight -= 1

    def _record_success(self, probe_generation: Optional[int]) -> None:
        with self._lock:
            self._release_probe(probe_generation)
            self._total_successes += 1
            self._total_requests += 1
            self._request_count += 1

            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self._config.success_threshold:
                    self._transition_to(CircuitState.CLOSED, self._clock.now())
            elif self._state is CircuitState.CLOSED:
                self._failure_count = max(0, self._failure_count - 1)

    def _record_failure(self, error: BaseException, probe_generation: Optional[int]) -> bool:
        """Count a failure. Returns True when the circuit is OPEN afterwards."""
        with self._lock:
            self._release_probe(probe_generation)
            now = self._clock.now()
            self._total_failures += 1
            self._total_requests += 1
            self._failure_count += 1
            self._request_count += 1
            self._last_failure_time = now

            self._logger.warning(
                "circuit_call_failed",
                state=self._state.value,
                failure_count=self._failure_count,
                request_count=self._request_count,
                error=str(error),
                error_type=type(error).__name__,
            )

            if self._state is CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN, now)
            elif self._state is CircuitState.CLOSED and self._should_open():
                self._transition_to(CircuitState.OPEN, now)

            opened = self._state is CircuitState.OPEN

        self._emit(CircuitEvent.FAILURE, error)
        return opened

    def _should_open(self) -> bool:
        if self._request_count >= self._config.volume_threshold:
            failure_rate = self._failure_count / self._request_count
            return failure_rate >= self._config.failure_rate_threshold
        return self._failure_count >= self._config.failure_threshold

    def _transition_to(self, new_state: CircuitState, now: float) -> bool:
        """Move to new_state. Caller holds the lock. Same-state moves are no-ops."""
        old_state = self._state
        if old_state is new_state:
            return False

        self._state = new_state
        transition = StateTransition(
            from_state=old_state,
            to_state=new_state,
            timestamp=now,
            failure_count=self._failure_count,
        )
        self._state_changes.append(transition)
        self._total_state_changes += 1

        if new_state is CircuitState.OPEN:
            self._next_attempt_time = now + self._config.timeout
            self._half_open_in_flight = 0
        elif new_state is CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_generation += 1
            self._half_open_in_flight = 0
        else:
            self._failure_count = 0
            self._success_count = 0
            self._request_count = 0
            self._next_attempt_time = None
            self._half_open_in_flight = 0

        log = self._logger.warning if new_state is CircuitState.OPEN else self._logger.info
        log(
            "circuit_state_changed",
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=transition.failure_count,
            next_attempt_time=self._next_attempt_time,
        )

        self._emit(CircuitEvent.STATE_CHANGE, transition)
        self._emit(_STATE_EVENTS[new_state], transition)
        return True

    # =========================================================================
    # Manual control and introspection
    # =========================================================================

    def open(self) -> None:
        """Force the circuit OPEN (e.g. during planned maintenance)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN, self._clock.now())

    def close(self) -> None:
        """Force the circuit CLOSED."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED, self._clock.now())

    def reset(self) -> None:
        """Force CLOSED with zeroed counters, from any state. Lifetime totals are kept."""
        with self._lock:
            self._failure_count = 0
            self._success_count = 0
            self._request_count = 0
            self._last_failure_time = None
            self._next_attempt_time = None
            self._half_open_in_flight = 0
            self._transition_to(CircuitState.CLOSED, self._clock.now())
            self._logger.info("circuit_reset")

    def get_stats(self) -> CircuitBreakerStats:
        with self._lock:
            return CircuitBreakerStats(
                name=self._name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                request_count=self._request_count,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
                config=self._config,
                total_requests=self._total_requests,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                total_rejections=self._total_rejections,
                total_state_changes=self._total_state_changes,
                state_changes=list(self._state_changes),
            )

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self._name!r}, state={self.state.value})"
