"""Resilience primitives."""

from .breaker import CircuitBreaker, State

__all__ = ["CircuitBreaker", "State"]
