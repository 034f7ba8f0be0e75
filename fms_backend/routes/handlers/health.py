"""
Health check endpoint.
"""
import asyncio

from aiohttp import web

from fms_shared import ErrorCode, Result, get_logger

from ..core import _json_response, _require_services

logger = get_logger(__name__)

HEALTH_TIMEOUT_S = 10.0


def register_health_routes(routes: web.RouteTableDef) -> None:
    """Register health routes."""

    @routes.get("/fms/health")
    async def health(request: web.Request) -> web.Response:
        """Get health status."""
        svc, error_result = _require_services(request)
        if error_result:
            return _json_response(error_result)
        try:
            result = await asyncio.wait_for(svc["health"].status(), timeout=HEALTH_TIMEOUT_S)
        except asyncio.TimeoutError:
            result = Result.Err(ErrorCode.TIMEOUT, "Health status timed out")
        return _json_response(result)
