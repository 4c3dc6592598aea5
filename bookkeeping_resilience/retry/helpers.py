"""
Helpers built on the retry engine: a decorator, batch retries,
standalone timeouts and fallback chains.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import structlog

from bookkeeping_resilience.errors import OperationTimeoutError
from bookkeeping_resilience.models.resilience import RetryPolicy
from bookkeeping_resilience.retry.engine import Operation, RetryEngine


T = TypeVar("T")

logger = structlog.get_logger(__name__)


def retryable(
    policy: Optional[RetryPolicy] = None,
    engine: Optional[RetryEngine] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator: every call of the wrapped coroutine function is retried.

    Usage:
        @retryable(RetryPolicies.FAST)
        async def fetch_exchange_rate(currency: str) -> Decimal:
            ...
    """
    retry_engine = engine or RetryEngine()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_engine.retry(
                lambda: func(*args, **kwargs),
                policy,
            )
        return wrapper

    return decorator


async def retry_batch(
    operations: Sequence[tuple[Operation, Optional[RetryPolicy]]],
    engine: Optional[RetryEngine] = None,
) -> list[Any]:
    """
    Retry several independent operations concurrently.

    Returns one entry per operation, in order: the result, or the
    exception the operation finally failed with.
    """
    retry_engine = engine or RetryEngine()
    results = await asyncio.gather(
        *(retry_engine.retry(op, policy) for op, policy in operations),
        return_exceptions=True,
    )
    failed = sum(1 for r in results if isinstance(r, BaseException))
    if failed:
        logger.warning("retry_batch_partial_failure", failed=failed, total=len(results))
    return list(results)


async def with_timeout(
    operation: Operation,
    timeout: float,
    name: Optional[str] = None,
) -> T:
    """Run `operation` once, raising OperationTimeoutError after `timeout` seconds."""
    try:
        async with asyncio.timeout(timeout) as scope:
            return await operation()
    except TimeoutError as exc:
        if scope.expired():
            raise OperationTimeoutError(timeout, operation=name) from exc
        raise


async def with_fallbacks(*operations: Operation) -> T:
    """
    Try operations in order and return the first success.

    Raises the last error if every operation fails.
    """
    if not operations:
        raise ValueError("with_fallbacks needs at least one operation")

    last_error: Optional[Exception] = None
    for index, operation in enumerate(operations):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            logger.warning(
                "fallback_operation_failed",
                index=index,
                remaining=len(operations) - index - 1,
                error=str(exc),
            )
    raise last_error
