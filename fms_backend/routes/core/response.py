"""
Response utilities for route handlers.
"""
import math
from typing import Any

from aiohttp import web

from fms_shared import Result


def _jsonable(value: Any) -> Any:
    """Strict-JSON view of a payload: `to_dict()` objects expanded, non-finite floats nulled."""
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        value = to_dict()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _json_response(result: Result, status: int | None = None) -> web.Response:
    """
    Convert a Result to the {ok, data, error, code, meta} envelope.

    Business and validation errors are HTTP 200 with ok=false; an explicit
    status is only passed for genuine server faults.
    """
    envelope = {
        "ok": result.ok,
        "data": result.data,
        "error": result.error,
        "code": result.code,
        "meta": result.meta,
    }
    response = web.json_response(_jsonable(envelope), status=status or 200)
    retry_after = (result.meta or {}).get("retry_after")
    if retry_after is not None:
        response.headers["Retry-After"] = str(int(retry_after))
    return response
