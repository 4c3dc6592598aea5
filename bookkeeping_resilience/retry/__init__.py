"""Retry engine and helpers."""

from bookkeeping_resilience.retry.engine import RetryEngine, extract_status
from bookkeeping_resilience.retry.helpers import (
    retry_batch,
    retryable,
    with_fallbacks,
    with_timeout,
)

__all__ = [
    "RetryEngine",
    "extract_status",
    "retry_batch",
    "retryable",
    "with_fallbacks",
    "with_timeout",
]
