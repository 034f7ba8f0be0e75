"""
Utility helpers shared across backend modules.
"""
from __future__ import annotations

import os
from typing import Any

_TRUTHY = frozenset({"1", "true", "yes", "on", "enabled"})
_FALSY = frozenset({"0", "false", "no", "off", "disabled"})


def parse_bool(value: Any, default: bool = False) -> bool:
    """Read a flag from a query string, env var or JSON value; unknown text yields `default`."""
    if isinstance(value, (bool, int, float)):
        return bool(value)
    word = str(value).strip().lower() if isinstance(value, str) else ""
    if word in _TRUTHY:
        return True
    if word in _FALSY:
        return False
    return default


def env_bool(name: str, default: bool) -> bool:
    return parse_bool(os.environ.get(name), default)


def normalize_path(path: str | os.PathLike[str]) -> str:
    """
    Canonical key for a filesystem path: absolute, normalized, no trailing separator.

    The filesystem root keeps its separator ("/" stays "/").
    """
    text = os.path.normpath(os.path.abspath(os.path.expanduser(os.fspath(path))))
    # POSIX normpath keeps exactly two leading slashes.
    if os.sep == "/" and text.startswith("//"):
        text = "/" + text.lstrip("/")
    return text


def parent_of(path: str) -> str | None:
    """Parent key of a normalized path, or None for the filesystem root."""
    parent = os.path.dirname(path)
    if not parent or parent == path:
        return None
    return parent


def subtree_prefix(path: str) -> str:
    """Prefix shared by every descendant of `path` ("/a" -> "/a/", "/" -> "/")."""
    return path if path.endswith(os.sep) else path + os.sep


def is_within(path: str, root: str) -> bool:
    """True when `path` equals `root` or lies beneath it (both normalized)."""
    return path == root or path.startswith(subtree_prefix(root))


def is_hidden_name(name: str) -> bool:
    return bool(name) and name.startswith(".")
