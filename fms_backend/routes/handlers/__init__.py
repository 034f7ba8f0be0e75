"""
Route handlers, one module per area.
"""
from .browse import register_browse_routes
from .crawl import register_crawl_routes
from .health import register_health_routes
from .launcher import register_launcher_routes
from .search import register_search_routes

__all__ = [
    "register_browse_routes",
    "register_crawl_routes",
    "register_health_routes",
    "register_launcher_routes",
    "register_search_routes",
]
