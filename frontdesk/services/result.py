from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

AI_ERROR = "ai_error"
DISPATCH_ERROR = "dispatch_error"
SEND_ERROR = "send_error"
CONFIG_ERROR = "config_error"


@dataclass
class Result(Generic[T]):
    """Outcome of an operation whose failure is expected and handled by the caller."""

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

    @staticmethod
    def from_exception(exc: BaseException, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=f"{type(exc).__name__}: {exc}", error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
