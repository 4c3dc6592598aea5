"""
Resilient API Client

Every request goes through the same pipeline:

    request interceptors
      -> client-side rate limit (optional)
      -> circuit breaker for the endpoint's resource
        -> retry engine
          -> fetch -> response interceptors -> decode -> ApiError on non-2xx
      -> error interceptors (on failure)

CRITICAL: Non-2xx responses become ApiError INSIDE the retry loop, so
the retry engine sees the HTTP status and only retries what is worth
retrying. The breaker sees one outcome per logical request, after all
retries.

Each resource (the first path segments of an endpoint, e.g.
/api/transactions) gets its own breaker, so a failing reports service
never blocks transaction calls.
"""

import asyncio
import http
from typing import Any, Awaitable, Callable, Mapping, Optional, Union
from urllib.parse import urlsplit

import structlog

from bookkeeping_resilience.audit import AuditLogger
from bookkeeping_resilience.circuit import CircuitBreaker, CircuitBreakerRegistry
from bookkeeping_resilience.client.interceptors import (
    ErrorInterceptor,
    RequestInterceptor,
    ResponseInterceptor,
    resolve,
)
from bookkeeping_resilience.errors import (
    AbortedError,
    ApiError,
    OperationTimeoutError,
)
from bookkeeping_resilience.models.api import ApiRequest, ClientConfig
from bookkeeping_resilience.models.resilience import CircuitBreakerStats, RetryPolicy
from bookkeeping_resilience.ratelimit import RateLimiter
from bookkeeping_resilience.retry import RetryEngine, extract_status
from bookkeeping_resilience.services.http import FetchResponse


Fetcher = Callable[[ApiRequest], Awaitable[FetchResponse]]
AuthHeaderProvider = Callable[[], Union[Mapping[str, str], Awaitable[Mapping[str, str]]]]


def create_api_error(status: int, data: Any, request: Optional[ApiRequest] = None) -> ApiError:
    """
    Build an ApiError from a non-2xx response.

    A JSON object body may carry message (or error), code, retryable and
    recoverable; missing fields fall back to API_ERROR / not retryable /
    recoverable.
    """
    try:
        phrase = http.HTTPStatus(status).phrase
    except ValueError:
        phrase = "Unknown Status"
    message = f"API error: {status} {phrase}"
    code = "API_ERROR"
    retryable = False
    recoverable = True

    if isinstance(data, dict):
        body_message = data.get("message") or data.get("error")
        if isinstance(body_message, str) and body_message:
            message = body_message
        code = str(data.get("code") or code)
        retryable = bool(data.get("retryable", retryable))
        recoverable = bool(data.get("recoverable", recoverable))

    return ApiError(
        message,
        status=status,
        code=code,
        retryable=retryable,
        recoverable=recoverable,
        data=data,
        url=request.url if request else None,
        method=request.method if request else None,
    )


class ResilientClient:
    """
    HTTP client with per-resource circuit breakers, retries, timeouts
    and optional client-side rate limiting.

    Usage:
        client = ResilientClient(HttpxFetcher(base_url="https://books.example.com"))
        transactions = await client.get("/transactions?month=2024-12")
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        config: Optional[ClientConfig] = None,
        registry: Optional[CircuitBreakerRegistry] = None,
        retry_engine: Optional[RetryEngine] = None,
        rate_limiter: Optional[RateLimiter] = None,
        auth_headers: Optional[AuthHeaderProvider] = None,
        audit_logger: Optional[AuditLogger] = None,
        logger: Any = None,
    ):
        self._fetcher = fetcher
        self._config = config or ClientConfig()
        self._registry = registry or CircuitBreakerRegistry(self._config.circuit_breaker)
        self._retry_engine = retry_engine or RetryEngine(self._config.retry_policy)
        self._rate_limiter = rate_limiter
        self._auth_headers = auth_headers
        self._audit_logger = audit_logger or AuditLogger()
        self._logger = logger or structlog.get_logger(__name__)

        self._breakers: dict[str, CircuitBreaker] = {}
        self._request_interceptors: list[RequestInterceptor] = []
        self._response_interceptors: list[ResponseInterceptor] = []
        self._error_interceptors: list[ErrorInterceptor] = []

    @property
    def config(self) -> ClientConfig:
        return self._config

    # =========================================================================
    # Interceptors
    # =========================================================================

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self._request_interceptors.append(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self._response_interceptors.append(interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> None:
        self._error_interceptors.append(interceptor)

    # =========================================================================
    # Breakers
    # =========================================================================

    def resolve_url(self, endpoint: str) -> str:
        """Join a relative endpoint to base_url; absolute URLs pass through."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self._config.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def resource_name(self, endpoint: str) -> str:
        """
        Resource an endpoint belongs to, from its resolved URL.

        '/transactions/123?x=1' with base_url '/api' -> '/api/transactions'
        with the default depth of 3 (the leading empty segment counts).
        Absolute URLs keep their scheme and host, so the same path on two
        hosts maps to two resources.
        """
        parts = urlsplit(self.resolve_url(endpoint))
        path = parts.path or "/"
        resource = "/".join(path.split("/")[: self._config.resource_depth])
        if parts.netloc:
            return f"{parts.scheme}://{parts.netloc}{resource}"
        return resource

    def get_circuit_breaker(self, endpoint: str) -> Optional[CircuitBreaker]:
        """Breaker guarding `endpoint`, or None when breakers are disabled."""
        if not self._config.use_circuit_breaker:
            return None
        resource = self.resource_name(endpoint)
        breaker = self._breakers.get(resource)
        if breaker is None:
            breaker = self._registry.get(f"api-{resource}", self._config.circuit_breaker)
            self._breakers[resource] = breaker
        return breaker

    def get_circuit_breaker_stats(self) -> dict[str, CircuitBreakerStats]:
        """Stats of this client's breakers, keyed by resource."""
        return {resource: breaker.get_stats() for resource, breaker in self._breakers.items()}

    def reset_circuit_breakers(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    # =========================================================================
    # Requests
    # =========================================================================

    async def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
        signal: Optional[asyncio.Event] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """
        Send a request and return the decoded body (JSON or text).

        Args:
            endpoint: Path relative to base_url, or an absolute URL
            method: HTTP method
            headers: Extra headers, merged over the auth headers
            body: JSON-serializable body, or str/bytes
            timeout: Outer bound in seconds (defaults to config.timeout)
            signal: Setting this event aborts the request
            retry_policy: Overrides config.retry_policy

        Raises:
            ApiError: Non-2xx response (after retries)
            CircuitOpenError: The resource's breaker is open
            OperationTimeoutError: The outer timeout expired
            AbortedError: `signal` was set
            RateLimitExceededError: Client-side limit reached
        """
        api_request = await self._build_request(endpoint, method, headers, body)

        try:
            for interceptor in self._request_interceptors:
                api_request = await resolve(interceptor(api_request))
            await self._check_rate_limit()
            return await self._dispatch(endpoint, api_request, timeout, signal, retry_policy)
        except Exception as exc:
            error = await self._handle_error(exc, api_request, endpoint)
            if error is exc:
                raise
            raise error from exc

    async def get(self, endpoint: str, **kwargs) -> Any:
        return await self.request(endpoint, method="GET", **kwargs)

    async def post(self, endpoint: str, body: Any = None, **kwargs) -> Any:
        return await self.request(endpoint, method="POST", body=body, **kwargs)

    async def put(self, endpoint: str, body: Any = None, **kwargs) -> Any:
        return await self.request(endpoint, method="PUT", body=body, **kwargs)

    async def patch(self, endpoint: str, body: Any = None, **kwargs) -> Any:
        return await self.request(endpoint, method="PATCH", body=body, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> Any:
        return await self.request(endpoint, method="DELETE", **kwargs)

    async def _build_request(
        self,
        endpoint: str,
        method: str,
        headers: Optional[Mapping[str, str]],
        body: Any,
    ) -> ApiRequest:
        url = self.resolve_url(endpoint)

        merged: dict[str, str] = {}
        if self._auth_headers is not None:
            merged.update(await resolve(self._auth_headers()))
        merged.update(headers or {})

        if body is not None and not isinstance(body, (str, bytes)):
            if not any(name.lower() == "content-type" for name in merged):
                merged["Content-Type"] = "application/json"

        return ApiRequest(url=url, method=method, headers=merged, body=body)

    async def _check_rate_limit(self) -> None:
        if self._rate_limiter is None or self._config.rate_limit is None:
            return
        limit = self._config.rate_limit
        await self._rate_limiter.enforce(
            limit.namespace,
            self._config.rate_limit_identifier,
            limit,
        )

    async def _dispatch(
        self,
        endpoint: str,
        api_request: ApiRequest,
        timeout: Optional[float],
        signal: Optional[asyncio.Event],
        retry_policy: Optional[RetryPolicy],
    ) -> Any:
        policy = retry_policy or self._config.retry_policy
        outer_timeout = timeout if timeout is not None else self._config.timeout

        # One abort event for the caller's signal and the outer timeout
        abort = asyncio.Event()
        timed_out = False

        def expire() -> None:
            nonlocal timed_out
            timed_out = True
            abort.set()

        timer = None
        if outer_timeout is not None:
            timer = asyncio.get_running_loop().call_later(outer_timeout, expire)

        relay = None
        if signal is not None:
            if signal.is_set():
                abort.set()
            else:
                relay = asyncio.ensure_future(self._relay(signal, abort))

        async def attempt_sequence() -> Any:
            try:
                return await self._retry_engine.retry(
                    lambda: self._send(api_request),
                    policy,
                    abort,
                )
            except AbortedError as exc:
                # An outer timeout is a failure of the resource; a caller abort is not
                if timed_out:
                    raise OperationTimeoutError(outer_timeout, operation=api_request.url) from exc
                raise

        breaker = self.get_circuit_breaker(endpoint)
        try:
            if breaker is None:
                return await attempt_sequence()
            return await breaker.execute(attempt_sequence)
        finally:
            if timer is not None:
                timer.cancel()
            if relay is not None:
                relay.cancel()

    @staticmethod
    async def _relay(signal: asyncio.Event, abort: asyncio.Event) -> None:
        await signal.wait()
        abort.set()

    async def _send(self, api_request: ApiRequest) -> Any:
        """One network attempt: fetch, response interceptors, decode, status check."""
        self._logger.debug("api_request", method=api_request.method, url=api_request.url)

        response = await self._fetcher(api_request)
        for interceptor in self._response_interceptors:
            response = await resolve(interceptor(response))

        data = self._decode(response)
        if not 200 <= response.status_code < 300:
            raise create_api_error(response.status_code, data, api_request)
        return data

    @staticmethod
    def _decode(response: FetchResponse) -> Any:
        content_type = next(
            (value for name, value in response.headers.items() if name.lower() == "content-type"),
            "",
        )
        if not response.text:
            return None
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text

    async def _handle_error(self, exc: Exception, api_request: ApiRequest, endpoint: str) -> Exception:
        error: Exception = exc
        for interceptor in self._error_interceptors:
            replaced = await resolve(interceptor(error, api_request))
            if replaced is not None:
                error = replaced

        resource = self.resource_name(endpoint)
        status = extract_status(error)
        code = getattr(error, "code", None)
        self._logger.error(
            "api_request_failed",
            method=api_request.method,
            url=api_request.url,
            resource=resource,
            status=status,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._audit_logger.log_external_service_error(
            service=resource,
            error_message=str(error),
            error_code=code if isinstance(code, str) else type(error).__name__,
            status=status,
        )
        return error
