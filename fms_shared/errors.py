"""
Exception types and helpers for sanitizing error messages before they reach clients.
"""
from __future__ import annotations

import os
import re
from typing import Any


class FmsError(Exception):
    """Base class for errors raised inside FMS components."""


class TagDecodeError(FmsError, ValueError):
    """Tag annotation bytes are not a readable tag list."""


class StoreError(FmsError):
    """A store write failed; raised inside a transaction block to force a rollback."""

    def __init__(self, message: str, code: str = "STORE_ERROR"):
        super().__init__(message)
        self.code = code

# Absolute POSIX paths and home-relative paths; URLs are left alone.
_PATH_RE = re.compile(r"(?<![\w:/?&=#%])(?:~|/(?!/))[^\s'\"#?]*")
_MAX_DETAIL = 200


def sanitize_error_message(exc: Any, fallback: str) -> str:
    """
    Turn an exception into a client-facing message without filesystem paths.

    The result is ``fallback`` alone when the exception carries no text,
    otherwise ``"<fallback>: <detail>"`` with paths replaced by ``[path]``
    and the detail flattened to one line.
    """
    fallback = fallback or "An error occurred"
    detail = "" if exc is None else str(exc)
    detail = detail.replace(os.getcwd(), "[cwd]")
    detail = _PATH_RE.sub("[path]", detail)
    detail = " ".join(detail.split())
    if not detail:
        return fallback
    return f"{fallback}: {detail[:_MAX_DETAIL]}"
