from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def from_exception(exc: BaseException, code: str = "exception") -> "Result[T]":
        return Result(ok=False, error=f"{type(exc).__name__}: {exc}", error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def summary(self) -> dict[str, Any]:
        """JSON-safe view stored on finished jobs."""
        if not self.ok:
            return {"ok": False, "error": self.error, "error_code": self.error_code}
        value = self.value
        if value is not None and not isinstance(value, (dict, list, str, int, float, bool)):
            value = str(value)
        return {"ok": True, "value": value}
