"""
Extension -> application associations, read from `~/.fms/apps.json`.

The file is a flat JSON object: {"pdf": "Preview", "psd": "Adobe Photoshop 2024"}.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from fms_shared import file_extension, get_logger

from ...config import APPS_CONFIG_PATH

logger = get_logger(__name__)


def load_associations(config_path: Optional[Path] = None) -> dict[str, str]:
    """
    Read the associations file. A missing file means no associations; an unreadable or
    malformed one is logged and treated the same way.
    """
    path = Path(config_path or APPS_CONFIG_PATH)
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring app associations in %s: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring app associations in %s: expected a JSON object", path)
        return {}

    associations: dict[str, str] = {}
    for ext, app in raw.items():
        if not isinstance(app, str) or not app.strip():
            continue
        key = str(ext).strip().lower().lstrip(".")
        if key:
            associations[key] = app.strip()
    logger.debug("Loaded %d app association(s) from %s", len(associations), path)
    return associations


class FileAssociations:
    def __init__(self, associations: Optional[dict[str, str]] = None, *, config_path: Optional[Path] = None):
        self.config_path = Path(config_path or APPS_CONFIG_PATH)
        self._associations = dict(associations) if associations is not None else load_associations(self.config_path)

    def app_for(self, path: str) -> Optional[str]:
        ext = file_extension(path)
        return self._associations.get(ext) if ext else None

    def reload(self) -> int:
        self._associations = load_associations(self.config_path)
        return len(self._associations)

    def to_dict(self) -> dict[str, str]:
        return dict(self._associations)
