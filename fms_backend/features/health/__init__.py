"""
Health feature - system status.
"""
from .service import HealthService

__all__ = ["HealthService"]
