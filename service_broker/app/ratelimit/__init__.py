"""
Rate limiting package for the broker.

Holds the in-process token bucket registry that enforces per-identity and
per-origin request budgets with burst tolerance.
"""

from .registry import FALLBACK_RETRY_AFTER, LimiterEntry, LimiterRegistry, TokenBucket

__all__ = [
    "FALLBACK_RETRY_AFTER",
    "LimiterEntry",
    "LimiterRegistry",
    "TokenBucket",
]
