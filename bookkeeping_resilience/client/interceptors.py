"""
Client interceptors.

Request interceptors receive an ApiRequest and return the request to
send. Response interceptors receive the raw response and return the
response to decode. Error interceptors receive (error, request) and may
return a replacement error; returning None keeps the current one.

Any interceptor may be a plain function or a coroutine function.
"""

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from bookkeeping_resilience.audit import AuditLogger
from bookkeeping_resilience.errors import ApiError
from bookkeeping_resilience.models.api import ApiRequest


RequestInterceptor = Callable[[ApiRequest], Union[ApiRequest, Awaitable[ApiRequest]]]
ResponseInterceptor = Callable[[Any], Any]
ErrorInterceptor = Callable[[Exception, ApiRequest], Any]

logger = structlog.get_logger(__name__)


async def resolve(value: Any) -> Any:
    """Await `value` if it is awaitable, otherwise return it."""
    if inspect.isawaitable(value):
        return await value
    return value


def reauthenticate_on_unauthorized(
    callback: Callable[[], Any],
    audit_logger: Optional[AuditLogger] = None,
) -> ErrorInterceptor:
    """
    Error interceptor that triggers re-authentication on HTTP 401.

    The error itself is still raised to the caller.

    Usage:
        client.add_error_interceptor(
            reauthenticate_on_unauthorized(session.refresh_token)
        )
    """

    async def interceptor(error: Exception, request: ApiRequest) -> Exception:
        if isinstance(error, ApiError) and error.status == 401:
            logger.warning("api_unauthorized", url=request.url, method=request.method)
            await resolve(callback())
            if audit_logger is not None:
                await audit_logger.log_reauthentication(request.url)
        return error

    return interceptor
