"""HTTP transport for the resilient client."""

from bookkeeping_resilience.services.http.httpx_fetcher import FetchResponse, HttpxFetcher

__all__ = ["FetchResponse", "HttpxFetcher"]
