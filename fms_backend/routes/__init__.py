"""
HTTP routes for the FMS JSON API.
"""
from .core import SERVICES_KEY
from .registry import create_app, register_routes

__all__ = ["SERVICES_KEY", "create_app", "register_routes"]
