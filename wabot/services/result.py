from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

SEND_FAILED = "send_failed"
NOT_CONFIGURED = "not_configured"
CONTACT_MISSING = "contact_missing"


class TransportError(Exception):
    """Send failure carrying a Result error code."""

    def __init__(self, message: str, code: str = SEND_FAILED):
        self.code = code
        super().__init__(message)


@dataclass
class Result(Generic[T]):
    """Outcome of a transport operation that never raises to its caller."""

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
    def from_exception(exc: Exception) -> "Result[T]":
        return Result.failure(str(exc), getattr(exc, "code", SEND_FAILED))

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
