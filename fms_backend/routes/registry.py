"""
Route registration: collects every handler module onto one aiohttp application.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Optional

from aiohttp import web

from fms_shared import get_logger
from fms_backend.config import API_PREFIX
from fms_backend.observability import ensure_observability

from .core import SERVICES_KEY
from .handlers import (
    register_browse_routes,
    register_crawl_routes,
    register_health_routes,
    register_launcher_routes,
    register_search_routes,
)

logger = get_logger(__name__)

_ROUTES_INSTALLED = web.AppKey("fms_routes_installed", bool)

_REGISTRARS = (
    register_browse_routes,
    register_search_routes,
    register_crawl_routes,
    register_launcher_routes,
    register_health_routes,
)

_API_HEADERS = {
    "Content-Security-Policy": "default-src 'none'",
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-store",
}


@web.middleware
async def security_headers_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    response = await handler(request)
    if request.path.startswith(API_PREFIX):
        for name, value in _API_HEADERS.items():
            response.headers.setdefault(name, value)
    return response


def register_routes(app: web.Application, services: Optional[dict] = None) -> None:
    """
    Install middlewares, API routes and the services holder on `app`.

    The holder dict lives as long as the app. It may be filled now from
    `services` or later by a startup hook; until then handlers answer
    SERVICE_UNAVAILABLE. Calling this twice only merges `services`.
    """
    app.setdefault(SERVICES_KEY, {}).update(services or {})
    if app.get(_ROUTES_INSTALLED):
        return

    ensure_observability(app)
    app.middlewares.append(security_headers_middleware)
    table = web.RouteTableDef()
    for registrar in _REGISTRARS:
        registrar(table)
    app.add_routes(table)
    app[_ROUTES_INSTALLED] = True
    logger.info("Registered %d API routes under %s", len(table), API_PREFIX)


def create_app(services: Optional[dict] = None) -> web.Application:
    app = web.Application()
    register_routes(app, services)
    return app
