from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ResultError(Exception):
    def __init__(self, error: str, code: Optional[str] = None):
        self.error = error
        self.code = code or "unknown"
        super().__init__(f"{self.code}: {error}")


@dataclass
class Result(Generic[T]):
    """Outcome of a lookup that may be legitimately unavailable (e.g. a provider not configured)."""

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

    def unwrap(self) -> T:
        if not self.ok:
            raise ResultError(self.error or "unknown error", self.error_code)
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
