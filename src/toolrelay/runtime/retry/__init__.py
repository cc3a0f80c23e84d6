"""Retry policies for transport calls.

Example:
    >>> from toolrelay.runtime.retry import RetryPolicy
    >>> policy = RetryPolicy(max_attempts=5, initial_delay=1.0, backoff_multiplier=2.0)
    >>> result = await executor.execute(url, headers, body, policy)
"""

from .backoff import ExponentialBackoff
from .policy import NO_RETRY, RETRY_AFTER, RETRY_AFTER_MS, RetryPolicy, retry_hint

__all__ = [
    "ExponentialBackoff",
    "RetryPolicy",
    "NO_RETRY",
    "RETRY_AFTER",
    "RETRY_AFTER_MS",
    "retry_hint",
]
