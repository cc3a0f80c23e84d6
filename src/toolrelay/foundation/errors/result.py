"""Result/Either type for executor outcomes.

Executors never raise for expected failures: they return ``Ok(value)`` or
``Err(FatalError)`` so callers are forced to handle both arms.

Examples:
    >>> Ok(42).unwrap()
    42
    >>> Err("fail").unwrap_or_raise(ValueError)
    Traceback (most recent call last):
    ValueError: fail
"""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


class Result(Generic[T, E]):
    """Discriminated union representing success (Ok) or failure (Err)."""

    __slots__ = ("_value", "_is_ok")

    def __init__(self, value: T | E, is_ok: bool) -> None:
        self._value = value
        self._is_ok = is_ok

    def is_ok(self) -> bool:
        return self._is_ok

    def is_err(self) -> bool:
        return not self._is_ok

    def unwrap(self) -> T:
        """Extract Ok value. Raises RuntimeError on Err."""
        if self._is_ok:
            return self._value  # type: ignore[return-value]
        raise RuntimeError(f"unwrap() on Err: {self._value}")

    def unwrap_err(self) -> E:
        """Extract Err value. Raises RuntimeError on Ok."""
        if not self._is_ok:
            return self._value  # type: ignore[return-value]
        raise RuntimeError(f"unwrap_err() on Ok: {self._value}")

    def unwrap_or_raise(self, exc_factory: Callable[[E], BaseException]) -> T:
        """Extract Ok value or raise the exception built from the error."""
        if self._is_ok:
            return self._value  # type: ignore[return-value]
        raise exc_factory(self._value)  # type: ignore[arg-type]

    __repr__ = lambda self: f"{'Ok' if self._is_ok else 'Err'}({self._value!r})"  # noqa: E731

    def __eq__(self, other: object) -> bool:
        return self._is_ok == other._is_ok and self._value == other._value if isinstance(other, Result) else NotImplemented


def Ok(value: T) -> Result[T, E]:  # noqa: N802
    """Construct Ok variant (success)."""
    return Result(value, True)


def Err(error: E) -> Result[T, E]:  # noqa: N802
    """Construct Err variant (failure)."""
    return Result(error, False)
