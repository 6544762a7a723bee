# talky/core/results.py
"""
Explicit success/failure values returned by collaborator wrappers.

Oracle-facing components (classifier, synthesizer, responder) report failures
through a Result instead of letting exceptions unwind into the controller.
Store failures are the exception: they raise StoreError and are handled by the
controller's top-level boundary.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value, error=None)

    @classmethod
    def failure(cls, error: str) -> "Result[T]":
        # an empty message would read as success
        return cls(value=None, error=error or "unknown error")

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok and self.value is not None else default
