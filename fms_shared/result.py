"""
Result type returned across component boundaries.

Expected failures (a vanished file, a folder not indexed yet, a locked store) travel
as `Result.Err(code, message, **meta)`; only programming errors raise.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .types import ErrorCode

T = TypeVar("T")


def _code_value(code: ErrorCode | str | Enum) -> str:
    return str(code.value if isinstance(code, Enum) else code)


@dataclass
class Result(Generic[T]):
    """
    Outcome of an operation: `data` when ok, otherwise `code` + `error`.

    Usage:
        res = await searcher.list_children("/Users/me/Documents")
        if res.has_code(ErrorCode.NOT_INDEXED_YET):
            ...
    """
    ok: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: str = "OK"  # an ErrorCode value when not ok
    meta: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def Ok(data: T, **meta: Any) -> "Result[T]":
        return Result(ok=True, data=data, meta=meta)

    @staticmethod
    def Err(code: ErrorCode | str | Enum, error: str, **meta: Any) -> "Result[T]":
        return Result(ok=False, error=error, code=_code_value(code), meta=meta)

    def has_code(self, code: ErrorCode | str | Enum) -> bool:
        return self.code == _code_value(code)

    def unwrap_or(self, default: T) -> T:
        """`data` when ok and present, else `default`."""
        return self.data if (self.ok and self.data is not None) else default
