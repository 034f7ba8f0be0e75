"""
Reveal / open endpoints.
"""
import asyncio

from aiohttp import web

from fms_shared import ErrorCode, Result, get_logger

from ..core import _json_response, _read_json, _require_services

logger = get_logger(__name__)


async def _path_from_body(request: web.Request) -> Result[str]:
    body = await _read_json(request)
    if not body.ok:
        return body  # type: ignore[return-value]
    path = str((body.data or {}).get("path") or "").strip()
    if not path:
        return Result.Err(ErrorCode.INVALID_INPUT, "Missing 'path'")
    return Result.Ok(path)


def register_launcher_routes(routes: web.RouteTableDef) -> None:
    """Register reveal-in-file-browser and open-with-app routes."""

    @routes.post("/fms/reveal")
    async def reveal(request: web.Request) -> web.Response:
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        path = await _path_from_body(request)
        if not path.ok:
            return _json_response(path)
        result = await asyncio.to_thread(svc["launcher"].reveal, path.data)
        return _json_response(result)

    @routes.post("/fms/open")
    async def open_file(request: web.Request) -> web.Response:
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        path = await _path_from_body(request)
        if not path.ok:
            return _json_response(path)
        result = await asyncio.to_thread(svc["launcher"].open_file, path.data)
        return _json_response(result)
