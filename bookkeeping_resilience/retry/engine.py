"""
Retry Engine

Runs an async operation up to RetryPolicy.max_attempts times with
exponential backoff and optional jitter, built on tenacity.

Retry decisions:
- An HTTP status in policy.retryable_statuses is retryable
- An error whose code, type name or message contains one of
  policy.retryable_error_patterns (case-insensitive) is retryable
- Network-layer errors (ConnectionError, httpx.TransportError) are retryable
- Everything else propagates after the first attempt

CRITICAL: When attempts run out the LAST REAL ERROR is re-raised, never a
wrapper. Callers and breakers see the same status and code the
downstream service produced.

The whole attempt sequence is bounded by policy.timeout, and an
asyncio.Event can abort it at any point (attempt or backoff sleep).
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from bookkeeping_resilience.errors import (
    AbortedError,
    CircuitOpenError,
    OperationTimeoutError,
)
from bookkeeping_resilience.models.resilience import DEFAULT_RETRY_POLICY, RetryPolicy


T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryPredicate = Callable[[BaseException, int], bool]
SleepFunc = Callable[[float], Awaitable[Any]]

JITTER_RATIO = 0.1

NETWORK_ERROR_TYPES = (ConnectionError, httpx.TransportError)

# Control-flow errors of this layer are never worth another attempt
NEVER_RETRY_TYPES = (AbortedError, CircuitOpenError)


def extract_status(error: BaseException) -> Optional[int]:
    """Find an HTTP status on an error (status, status_code or response.status_code)."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


class _BackoffWait(wait_base):
    """tenacity wait strategy that delegates to RetryEngine.calculate_delay."""

    def __init__(self, engine: "RetryEngine", policy: RetryPolicy):
        self._engine = engine
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self._engine.calculate_delay(retry_state.attempt_number, self._policy)


class RetryEngine:
    """
    Retries async operations according to a RetryPolicy.

    Usage:
        engine = RetryEngine(RetryPolicies.STANDARD)
        data = await engine.retry(lambda: fetch_statement(account_id))

    sleep and rng are injectable so tests can record backoff delays and
    make jitter deterministic.
    """

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        *,
        sleep: Optional[SleepFunc] = None,
        rng: Optional[random.Random] = None,
        logger: Any = None,
    ):
        self._policy = policy
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def calculate_delay(self, retry_number: int, policy: Optional[RetryPolicy] = None) -> float:
        """
        Backoff before retry number `retry_number` (1 = first retry).

        min(base_delay * exponential_base ** (retry_number - 1), max_delay),
        moved by up to +/-10% when jitter is enabled, never negative.
        """
        policy = policy or self._policy
        exponent = max(0, retry_number - 1)
        delay = min(policy.base_delay * policy.exponential_base ** exponent, policy.max_delay)

        if policy.jitter and delay > 0:
            spread = delay * JITTER_RATIO
            delay += self._rng.uniform(-spread, spread)

        return max(0.0, delay)

    def is_retryable(self, error: BaseException, policy: Optional[RetryPolicy] = None) -> bool:
        """Classify an error raised by an attempt."""
        policy = policy or self._policy

        if not isinstance(error, Exception) or isinstance(error, NEVER_RETRY_TYPES):
            return False

        status = extract_status(error)
        if status is not None and status in policy.retryable_statuses:
            return True

        if isinstance(error, NETWORK_ERROR_TYPES):
            return True

        haystacks = [type(error).__name__.lower(), str(error).lower()]
        code = getattr(error, "code", None)
        if code is not None:
            haystacks.append(str(code).lower())

        return any(
            pattern.lower() in haystack
            for pattern in policy.retryable_error_patterns
            for haystack in haystacks
        )

    async def retry(
        self,
        operation: Operation,
        policy: Optional[RetryPolicy] = None,
        signal: Optional[asyncio.Event] = None,
        *,
        should_retry: Optional[RetryPredicate] = None,
    ) -> T:
        """
        Run `operation` until it succeeds, fails for good, times out or is aborted.

        Args:
            operation: Zero-argument coroutine function, called once per attempt
            policy: Overrides the engine's default policy
            signal: Setting this event aborts the sequence with AbortedError
            should_retry: Replaces the built-in classification;
                          called as should_retry(error, attempt_number)

        Returns:
            The first successful result

        Raises:
            The last error raised by `operation` once it stops being retried,
            OperationTimeoutError when policy.timeout expires,
            AbortedError when `signal` is set
        """
        policy = policy or self._policy

        if signal is not None and signal.is_set():
            raise AbortedError("Operation aborted before the first attempt")

        bounded = self._run_bounded(operation, policy, should_retry)
        if signal is None:
            return await bounded
        return await self._run_abortable(bounded, signal)

    async def _run_bounded(
        self,
        operation: Operation,
        policy: RetryPolicy,
        should_retry: Optional[RetryPredicate],
    ) -> T:
        try:
            async with asyncio.timeout(policy.timeout) as scope:
                return await self._run_attempts(operation, policy, should_retry)
        except TimeoutError as exc:
            if scope.expired():
                self._logger.warning(
                    "retry_sequence_timed_out",
                    timeout=policy.timeout,
                    max_attempts=policy.max_attempts,
                )
                raise OperationTimeoutError(policy.timeout) from exc
            raise

    async def _run_attempts(
        self,
        operation: Operation,
        policy: RetryPolicy,
        should_retry: Optional[RetryPredicate],
    ) -> T:
        if should_retry is None:
            retry_condition = retry_if_exception(lambda exc: self.is_retryable(exc, policy))
        else:
            retry_condition = self._custom_retry(should_retry)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=_BackoffWait(self, policy),
            retry=retry_condition,
            sleep=self._sleep,
            before_sleep=self._log_retry_scheduled,
            reraise=True,
        )

        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    result = await operation()
                    if attempt_number > 1:
                        self._logger.info(
                            "operation_succeeded_after_retry",
                            attempts=attempt_number,
                        )
                    return result
        except Exception as exc:
            self._logger.warning(
                "operation_failed",
                attempts=attempt_number,
                max_attempts=policy.max_attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise

    @staticmethod
    def _custom_retry(should_retry: RetryPredicate) -> Callable[[RetryCallState], bool]:
        def _judge(retry_state: RetryCallState) -> bool:
            outcome = retry_state.outcome
            if outcome is None or not outcome.failed:
                return False
            error = outcome.exception()
            if not isinstance(error, Exception) or isinstance(error, NEVER_RETRY_TYPES):
                return False
            return bool(should_retry(error, retry_state.attempt_number))
        return _judge

    def _log_retry_scheduled(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        self._logger.debug(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            delay=delay,
            error=str(error) if error else None,
        )

    async def _run_abortable(self, work: Awaitable[T], signal: asyncio.Event) -> T:
        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            raise AbortedError() from exc
        self._logger.info("operation_aborted")
        raise AbortedError()
