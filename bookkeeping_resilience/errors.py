"""
Error taxonomy for the resilience layer.

CRITICAL: There is no "retries exhausted" error. When the retry engine
gives up, the last real error from the operation is raised unchanged so
callers can still see its status and code.
"""

from typing import Any, Optional


class ResilienceError(Exception):
    """Base exception for errors raised by the resilience layer itself."""
    pass


class CircuitOpenError(ResilienceError):
    """The breaker refused the call without running the operation."""

    def __init__(self, breaker_name: str, retry_after: float, state: str = "OPEN"):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        self.state = state
        super().__init__(
            f"Circuit breaker '{breaker_name}' is {state}. "
            f"Retry after {retry_after:.1f}s"
        )


class OperationTimeoutError(ResilienceError):
    """An operation or an attempt sequence ran past its deadline."""

    def __init__(self, timeout: float, operation: Optional[str] = None):
        self.timeout = timeout
        self.operation = operation
        target = f"'{operation}' " if operation else ""
        super().__init__(f"Operation {target}timed out after {timeout}s")


class AbortedError(ResilienceError):
    """The caller cancelled the operation through its abort signal."""

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message)


class RateLimitExceededError(ResilienceError):
    """Too many requests for one (namespace, identifier) in the current window."""

    def __init__(
        self,
        retry_after: int,
        namespace: str,
        identifier: str,
        limit: int,
        reset_at: float,
    ):
        self.retry_after = retry_after
        self.namespace = namespace
        self.identifier = identifier
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            f"Rate limit exceeded for {namespace}:{identifier}. "
            f"Try again in {retry_after} seconds."
        )


class ApiError(ResilienceError):
    """
    A downstream API answered with a non-2xx status.

    The message, code and flags come from the JSON error body when the
    server sent one.
    """

    def __init__(
        self,
        message: str,
        status: int,
        code: str = "API_ERROR",
        retryable: bool = False,
        recoverable: bool = True,
        data: Any = None,
        url: Optional[str] = None,
        method: Optional[str] = None,
    ):
        self.status = status
        self.code = code
        self.retryable = retryable
        self.recoverable = recoverable
        self.data = data
        self.url = url
        self.method = method
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)
