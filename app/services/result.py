from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """
    Outcome of a step that can fail without raising.

    ``error_code`` is a short machine-readable reason (``malformed_decision``,
    ``conversation_closed``, ``rate_limited``...); ``error`` is for logs only
    and is never shown to the visitor.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def failed_with(self, *codes: str) -> bool:
        return not self.ok and self.error_code in codes

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
