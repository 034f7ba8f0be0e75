"""
Metadata extraction for a single filesystem entry.

Pure reads: `extract` stats a path and fetches its raw tag bytes, `list_directory`
enumerates a directory. Failures come back as `Result.Err` with an `ErrorCode`
(ACCESS_DENIED, NOT_FOUND, IO_ERROR) and symlink cycles as SKIPPED_CYCLE.
"""
from __future__ import annotations

import errno
import os
import stat
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import xattr

from fms_shared import ErrorCode, Result, TagDecodeError, classify_file, file_extension, get_logger

from ...utils import normalize_path, parent_of
from .tags import TAG_XATTR_NAME, TagAssociation, decode_tags

logger = get_logger(__name__)

TagReader = Callable[[str], Optional[bytes]]

# errno values meaning "this entry has no tag attribute" rather than a failure
_NO_ATTR_ERRNOS = {
    getattr(errno, "ENOATTR", errno.ENODATA),
    errno.ENODATA,
    errno.ENOTSUP,
    errno.EOPNOTSUPP,
}


@dataclass(frozen=True)
class ExtractedEntry:
    """Stat fields and tags of one entry, ready to be written to the store."""

    path: str
    parent: Optional[str]
    name: str
    is_dir: bool
    size: int
    mtime: int
    ext: str
    kind: str
    real_path: str = ""
    tags: tuple[TagAssociation, ...] = field(default_factory=tuple)
    tag_fault: bool = False
    # time.monotonic() when the entry was stat-ed; a later tombstone overrides it.
    seen_at: float = field(default_factory=time.monotonic)

    @property
    def tags_text(self) -> str:
        return "\n".join(tag.name for tag in self.tags)


def read_tag_bytes(path: str) -> Optional[bytes]:
    """Raw Finder tag attribute of `path`, or None when the entry carries none."""
    try:
        return xattr.getxattr(path, TAG_XATTR_NAME)
    except OSError as exc:
        if exc.errno not in _NO_ATTR_ERRNOS:
            logger.debug("Tag attribute unreadable for %s: %s", path, exc)
        return None


def _error_from_os(exc: OSError, path: str) -> Result:
    if isinstance(exc, PermissionError):
        return Result.Err(ErrorCode.ACCESS_DENIED, f"Permission denied: {path}")
    if isinstance(exc, FileNotFoundError):
        return Result.Err(ErrorCode.NOT_FOUND, f"Entry vanished: {path}")
    return Result.Err(ErrorCode.IO_ERROR, f"{exc.strerror or exc}: {path}", errno=exc.errno)


def _stat_entry(path: str, follow_symlinks: bool) -> os.stat_result:
    if not follow_symlinks:
        return os.lstat(path)
    try:
        return os.stat(path)
    except FileNotFoundError:
        # Dangling symlink: record the link itself instead of reporting it as vanished.
        return os.lstat(path)


def _decode(raw: Optional[bytes], path: str) -> tuple[tuple[TagAssociation, ...], bool]:
    try:
        return tuple(decode_tags(raw)), False
    except TagDecodeError as exc:
        logger.debug("Ignoring tags of %s: %s", path, exc)
        return (), True


def extract(
    path: str,
    *,
    ancestors: frozenset[str] = frozenset(),
    follow_symlinks: bool = True,
    tag_reader: TagReader = read_tag_bytes,
) -> Result[ExtractedEntry]:
    """
    Stat one entry and read its tags.

    Args:
        path: Entry path.
        ancestors: Real paths of the directories above this entry in the current traversal.
            A directory resolving to one of them is reported as SKIPPED_CYCLE.
        follow_symlinks: Describe symlink targets (True) or the links themselves.
        tag_reader: Returns raw tag bytes for a path (swap in a fake for tests).

    Returns:
        Result[ExtractedEntry]
    """
    seen_at = time.monotonic()
    key = normalize_path(path)
    try:
        st = _stat_entry(key, follow_symlinks)
    except OSError as exc:
        return _error_from_os(exc, key)

    is_dir = stat.S_ISDIR(st.st_mode)
    real_path = key
    if is_dir:
        try:
            real_path = os.path.realpath(key)
        except OSError as exc:
            return _error_from_os(exc, key)
        if real_path in ancestors:
            return Result.Err(ErrorCode.SKIPPED_CYCLE, f"Symlink cycle: {key} -> {real_path}", real_path=real_path)

    try:
        raw = tag_reader(key)
    except OSError as exc:
        logger.debug("Tag read failed for %s: %s", key, exc)
        raw = None
    tags, tag_fault = _decode(raw, key)

    name = os.path.basename(key) or key
    entry = ExtractedEntry(
        path=key,
        parent=parent_of(key),
        name=name,
        is_dir=is_dir,
        size=0 if is_dir else int(st.st_size),
        mtime=int(st.st_mtime),
        ext="" if is_dir else file_extension(name),
        kind=classify_file(name, is_dir=is_dir),
        real_path=real_path,
        tags=tags,
        tag_fault=tag_fault,
        seen_at=seen_at,
    )
    return Result.Ok(entry)


def list_directory(path: str) -> Result[list[str]]:
    """Immediate children of a directory, as normalized paths."""
    key = normalize_path(path)
    try:
        with os.scandir(key) as it:
            return Result.Ok([os.path.join(key, entry.name) for entry in it])
    except NotADirectoryError:
        return Result.Err(ErrorCode.INVALID_INPUT, f"Not a directory: {key}")
    except OSError as exc:
        return _error_from_os(exc, key)
