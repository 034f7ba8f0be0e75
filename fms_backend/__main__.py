"""
Run the FMS indexing service and its JSON API.

    python -m fms_backend --root ~/Documents
"""
from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from aiohttp import web

from fms_shared import get_logger

from .config import CRAWL_DEFAULT_ROOT, HTTP_HOST, HTTP_PORT, WATCHER_ENABLED
from .deps import build_services, dispose_services, start_indexing
from .routes import SERVICES_KEY, register_routes
from .utils import normalize_path

logger = get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="fms", description="Index a folder tree and serve queries over HTTP.")
    parser.add_argument("--root", default=CRAWL_DEFAULT_ROOT, help="folder to crawl (default: %(default)s)")
    parser.add_argument("--host", default=HTTP_HOST, help="bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=HTTP_PORT, help="bind port (default: %(default)s)")
    parser.add_argument("--no-watch", action="store_true", help="do not follow filesystem changes after the crawl")
    return parser.parse_args(argv)


def build_app(root: str, *, watch: bool) -> web.Application:
    app = web.Application()
    register_routes(app)

    async def _on_startup(app: web.Application) -> None:
        services_result = await build_services()
        if not services_result.ok or not services_result.data:
            raise RuntimeError(services_result.error or "Failed to initialize services")
        app[SERVICES_KEY].update(services_result.data)
        await start_indexing(services_result.data, root, watch=watch)

    async def _on_cleanup(app: web.Application) -> None:
        await dispose_services(app[SERVICES_KEY])
        app[SERVICES_KEY].clear()

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    root = normalize_path(args.root)
    logger.info("Indexing %s, serving on http://%s:%s", root, args.host, args.port)
    app = build_app(root, watch=WATCHER_ENABLED and not args.no_watch)
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
