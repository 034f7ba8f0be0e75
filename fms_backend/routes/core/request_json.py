"""
JSON request bodies, read with a size ceiling.

Handlers always get a Result back; nothing here raises.
"""
from __future__ import annotations

import json

from aiohttp import web

from fms_shared import ErrorCode, Result

MAX_JSON_BYTES = 1024 * 1024
_CHUNK = 64 * 1024


def _too_large(limit: int, seen: int | None = None) -> Result[dict]:
    size = f"{seen} > {limit}" if seen is not None else f"> {limit}"
    return Result.Err(ErrorCode.INVALID_INPUT, f"JSON body too large ({size})", limit=limit)


async def _read_json(request: web.Request, *, max_bytes: int = MAX_JSON_BYTES) -> Result[dict]:
    """Decode the body as a JSON object; an empty body reads as {}."""
    if (request.content_length or 0) > max_bytes:
        return _too_large(max_bytes, request.content_length)

    body = bytearray()
    try:
        async for chunk in request.content.iter_chunked(_CHUNK):
            body += chunk
            if len(body) > max_bytes:
                return _too_large(max_bytes)
    except (ConnectionError, OSError) as exc:
        return Result.Err(ErrorCode.INVALID_JSON, f"Failed to read request body: {exc}")

    try:
        text = bytes(body).decode("utf-8")
        parsed = json.loads(text) if text.strip() else {}
    except UnicodeDecodeError as exc:
        return Result.Err(ErrorCode.INVALID_JSON, f"Body is not UTF-8: {exc}")
    except json.JSONDecodeError as exc:
        return Result.Err(ErrorCode.INVALID_JSON, f"Invalid JSON body: {exc}")
    if not isinstance(parsed, dict):
        return Result.Err(ErrorCode.INVALID_JSON, "JSON body must be an object")
    return Result.Ok(parsed)
