"""
Service lookup for route handlers.

Services are built once at startup and stored on the aiohttp application.
"""
from typing import Any, Optional

from aiohttp import web

from fms_shared import ErrorCode, Result

SERVICES_KEY: web.AppKey[dict] = web.AppKey("fms_services", dict)


def _require_services(request: web.Request) -> tuple[Optional[dict[str, Any]], Optional[Result[Any]]]:
    services = request.app.get(SERVICES_KEY)
    if services:
        return services, None
    return None, Result.Err(ErrorCode.SERVICE_UNAVAILABLE, "Services are unavailable")
