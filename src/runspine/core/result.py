"""
Result envelope for process invocations.

An external process exiting non-zero or failing to start is an expected
outcome, so ``ProcessRunner.run`` returns ``Ok[T]`` or ``Err[T]`` instead of
raising and callers handle failure as data. ``unwrap()`` turns an ``Err``
back into the exception for callers that treat failure as exceptional.

Examples:
    >>> match runner.run("yt-dlp", ["--version"]):
    ...     case Ok(outcome):
    ...         print(outcome.stdout[0])
    ...     case Err(error):
    ...         print("failed:", error)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result containing an error; ``unwrap`` raises it."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        raise self.error

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


__all__ = ["Ok", "Err", "Result"]
