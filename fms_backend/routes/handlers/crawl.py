"""
Crawl control endpoints.
"""
import os
from typing import Any, Optional

from aiohttp import web

from fms_shared import ErrorCode, Result, get_logger
from fms_backend.config import CRAWL_DEFAULT_ROOT

from ..core import _json_response, _read_json, _require_services

logger = get_logger(__name__)


def _parse_max_depth(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("max_depth must be an integer")
    depth = int(value)
    if depth < 0:
        raise ValueError("max_depth must be >= 0")
    return depth


def register_crawl_routes(routes: web.RouteTableDef) -> None:
    """Register crawl start / cancel / status routes."""

    @routes.post("/fms/crawl")
    async def start_crawl(request: web.Request) -> web.Response:
        """
        Start crawling a root in the background, superseding any running crawl.

        JSON body:
            root: Folder to crawl (default FMS_ROOT)
            max_depth: Optional depth limit (root is depth 0)
        """
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        payload = body.data or {}

        root = str(payload.get("root") or CRAWL_DEFAULT_ROOT or "").strip()
        if not root:
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Missing 'root'"))
        if not os.path.isdir(root):
            return _json_response(Result.Err(ErrorCode.NOT_FOUND, "Crawl root is not a directory"))
        try:
            max_depth = _parse_max_depth(payload.get("max_depth"))
        except (TypeError, ValueError):
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Invalid 'max_depth'"))

        svc["index"].start_crawl(root, max_depth=max_depth)
        logger.info("Crawl requested for %s (max_depth=%s)", root, max_depth)
        return _json_response(Result.Ok({"started": True, "state": svc["index"].crawl_state().to_dict()}))

    @routes.post("/fms/crawl/cancel")
    async def cancel_crawl(request: web.Request) -> web.Response:
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        cancelled = svc["index"].cancel_crawl()
        return _json_response(Result.Ok({"cancelled": cancelled}))

    @routes.get("/fms/crawl/status")
    async def crawl_status(request: web.Request) -> web.Response:
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        return _json_response(Result.Ok(svc["index"].crawl_state()))
