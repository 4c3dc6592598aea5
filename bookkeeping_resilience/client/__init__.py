"""Resilient API client."""

from bookkeeping_resilience.client.api_client import (
    AuthHeaderProvider,
    Fetcher,
    ResilientClient,
    create_api_error,
)
from bookkeeping_resilience.client.interceptors import reauthenticate_on_unauthorized

__all__ = [
    "AuthHeaderProvider",
    "Fetcher",
    "ResilientClient",
    "create_api_error",
    "reauthenticate_on_unauthorized",
]
