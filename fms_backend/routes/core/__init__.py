"""
Core utilities for route handlers.
"""
from .request_json import _read_json
from .response import _json_response
from .services import SERVICES_KEY, _require_services

__all__ = [
    "SERVICES_KEY",
    "_json_response",
    "_read_json",
    "_require_services",
]
