"""Runtime: retry policies, resilience primitives and logging."""

from .observability import configure_logging, get_logger
from .resilience import CircuitBreaker
from .retry import ExponentialBackoff, RetryPolicy, retry_hint

__all__ = ["CircuitBreaker", "ExponentialBackoff", "RetryPolicy", "retry_hint", "configure_logging", "get_logger"]
