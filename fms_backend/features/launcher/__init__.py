"""
Launcher feature - reveal in the native file browser and open with associated apps.
"""
from .associations import FileAssociations, load_associations
from .service import LauncherService

__all__ = ["FileAssociations", "LauncherService", "load_associations"]
