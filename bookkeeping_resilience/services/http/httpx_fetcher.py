"""
HTTP fetcher backed by httpx.

The ResilientClient only needs an async callable that turns an
ApiRequest into a response exposing status_code, headers, text and
json(). This is the default one.
"""

from typing import Any, Mapping, Optional, Protocol

import httpx

from bookkeeping_resilience.models.api import ApiRequest


class FetchResponse(Protocol):
    """The parts of an HTTP response the client reads."""

    status_code: int
    headers: Mapping[str, str]
    text: str

    def json(self) -> Any:
        ...


class HttpxFetcher:
    """
    Sends ApiRequests with an httpx.AsyncClient.

    Usage:
        async with HttpxFetcher(base_url="https://books.example.com") as fetcher:
            client = ResilientClient(fetcher)

    Dict and list bodies are sent as JSON; str and bytes bodies as-is.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, **client_kwargs):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(**client_kwargs)

    async def __call__(self, request: ApiRequest) -> httpx.Response:
        kwargs: dict[str, Any] = {}
        if request.body is not None:
            if isinstance(request.body, (str, bytes)):
                kwargs["content"] = request.body
            else:
                kwargs["json"] = request.body

        return await self._client.request(
            request.method,
            request.url,
            headers=request.headers,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
