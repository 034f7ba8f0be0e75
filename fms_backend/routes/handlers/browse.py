"""
Folder browsing and tag endpoints.
"""
from aiohttp import web

from fms_shared import ErrorCode, Result, get_logger
from fms_backend.utils import parse_bool

from ..core import _json_response, _require_services

logger = get_logger(__name__)


def register_browse_routes(routes: web.RouteTableDef) -> None:
    """Register folder listing and tag routes."""

    @routes.get("/fms/children")
    async def list_children(request: web.Request) -> web.Response:
        """
        List the immediate children of a folder.

        Query params:
            path: Absolute folder path
            hidden: Include dot-files (default true)

        A folder that is not indexed yet answers NOT_INDEXED_YET with meta.indexing
        set; a shallow index of it is already running in the background.
        """
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        path = (request.query.get("path") or "").strip()
        if not path:
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Missing 'path'"))
        include_hidden = parse_bool(request.query.get("hidden"), True)
        result = await svc["index"].list_children(path, include_hidden=include_hidden)
        return _json_response(result)

    @routes.get("/fms/tags")
    async def list_tags(request: web.Request) -> web.Response:
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        return _json_response(await svc["index"].list_tags())

    @routes.get("/fms/tags/files")
    async def files_for_tag(request: web.Request) -> web.Response:
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        tag = request.query.get("tag") or ""
        query = request.query.get("q") or ""
        return _json_response(await svc["index"].files_for_tag(tag, query))
