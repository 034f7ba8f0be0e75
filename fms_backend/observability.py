"""
Per-request correlation ids and slow or failed request logging for the API.
"""
from __future__ import annotations

import time
from uuid import uuid4

from aiohttp import web

from fms_shared import get_logger, request_id_var

from .config import API_PREFIX
from .utils import env_bool

logger = get_logger(__name__)

_OBSERVABILITY_INSTALLED = web.AppKey("fms_observability_installed", bool)

SLOW_REQUEST_MS = 750.0
REQUEST_ID_HEADER = "X-Request-ID"


def _get_request_id(request: web.Request) -> str:
    rid = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return rid[:64] or uuid4().hex


def _should_log(path: str, *, status: int | None, duration_ms: float) -> bool:
    if not path.startswith(API_PREFIX):
        return False
    if env_bool("FMS_OBS_LOG_ALL", False):
        return True
    if status is not None and status >= 400:
        return True
    return duration_ms >= SLOW_REQUEST_MS


@web.middleware
async def request_context_middleware(request: web.Request, handler):
    """Add request-id correlation and log failed or slow API requests."""
    rid = _get_request_id(request)
    request["fms_request_id"] = rid
    token = request_id_var.set(rid)
    start = time.perf_counter()
    status: int | None = None
    try:
        response = await handler(request)
        status = int(getattr(response, "status", 200) or 200)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
    except web.HTTPException as exc:
        status = exc.status
        exc.headers[REQUEST_ID_HEADER] = rid
        raise
    except Exception:
        status = 500
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        if _should_log(request.path, status=status, duration_ms=duration_ms):
            logger.info("%s %s -> %s (%.1fms)", request.method, request.path, status, duration_ms)
        request_id_var.reset(token)


def ensure_observability(app: web.Application) -> None:
    if app.get(_OBSERVABILITY_INSTALLED):
        return
    app.middlewares.append(request_context_middleware)
    app[_OBSERVABILITY_INSTALLED] = True
