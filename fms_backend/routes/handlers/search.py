"""
Free-text search endpoint.
"""
from aiohttp import web

from fms_shared import ErrorCode, Result, get_logger
from fms_backend.config import SEARCH_MAX_RESULTS

from ..core import _json_response, _require_services

logger = get_logger(__name__)


def _parse_limit(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    value = int(raw)
    if value < 1:
        raise ValueError("limit must be positive")
    return min(value, SEARCH_MAX_RESULTS)


def register_search_routes(routes: web.RouteTableDef) -> None:
    """Register search routes."""

    @routes.get("/fms/search")
    async def search(request: web.Request) -> web.Response:
        """
        Search names, paths and tags.

        Query params:
            q: Query text (empty returns no results)
            dir: Restrict to the immediate children of this folder
            limit: Result cap (default and maximum FMS_SEARCH_MAX_RESULTS)
        """
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        query = request.query.get("q") or ""
        directory = (request.query.get("dir") or "").strip()
        if directory:
            return _json_response(await svc["index"].search_in_directory(directory, query))
        try:
            limit = _parse_limit(request.query.get("limit"))
        except ValueError:
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Invalid 'limit'"))
        return _json_response(await svc["index"].search(query, limit=limit))
