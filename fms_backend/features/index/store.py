"""
Index store write path.

Every mutation of `files` / `file_tags` goes through `IndexStore`. A batch is applied
inside one transaction, so readers either see all of it or none of it, and a file row
is never visible with half of its tags.
"""
from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Iterable, Sequence

from fms_shared import ErrorCode, Result, StoreError, get_logger, timer

from ...adapters.db.sqlite import Sqlite
from ...utils import parent_of, subtree_prefix
from ..metadata.extractor import ExtractedEntry

logger = get_logger(__name__)

GENERATION_KEY = "crawl_generation"

_UPSERT_FILE_SQL = """
INSERT INTO files
    (path, parent, name, is_dir, size, mtime, ext, kind, generation, unreadable, tag_fault, deleted, tags_text)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, 0, ?)
ON CONFLICT(path) DO UPDATE SET
    parent = excluded.parent,
    name = excluded.name,
    is_dir = excluded.is_dir,
    size = excluded.size,
    mtime = excluded.mtime,
    ext = excluded.ext,
    kind = excluded.kind,
    generation = excluded.generation,
    unreadable = 0,
    tag_fault = excluded.tag_fault,
    deleted = 0,
    tags_text = excluded.tags_text
"""

_DELETE_TAGS_SQL = "DELETE FROM file_tags WHERE path = ?"
_INSERT_TAG_SQL = "INSERT INTO file_tags (path, tag, color, ordinal) VALUES (?, ?, ?, ?)"
_MARK_LISTED_SQL = "UPDATE files SET listed_generation = ? WHERE path = ?"
_MARK_UNREADABLE_SQL = "UPDATE files SET unreadable = 1, listed_generation = ? WHERE path = ?"

# Subtree match as an index-friendly range: "/a" covers "/a" and "/a/" <= path < "/a0".
_SUBTREE_WHERE = "(path = ? OR (path >= ? AND path < ?))"


def subtree_bounds(path: str) -> tuple[str, str, str]:
    """Parameters for `_SUBTREE_WHERE`."""
    prefix = subtree_prefix(path)
    upper = prefix[:-1] + chr(ord(prefix[-1]) + 1)
    return path, prefix, upper


def _file_row(entry: ExtractedEntry, generation: int) -> tuple:
    return (
        entry.path,
        entry.parent,
        entry.name,
        1 if entry.is_dir else 0,
        int(entry.size),
        int(entry.mtime),
        entry.ext,
        entry.kind,
        int(generation),
        1 if entry.tag_fault else 0,
        entry.tags_text,
    )


def _confirm_absent(paths: Sequence[str]) -> list[str]:
    return [p for p in paths if not os.path.lexists(p)]


class IndexStore:
    """
    Atomic batch writes, tombstones and the crawl generation counter.

    All methods are coroutines returning `Result`; they never raise.
    """

    def __init__(self, db: Sqlite):
        self.db = db
        # path -> time.monotonic() of its tombstone; entries observed earlier are stale.
        self._removed: dict[str, float] = {}

    def _removed_since(self, entry: ExtractedEntry) -> bool:
        """True when `entry` or a directory above it was tombstoned after it was observed."""
        if not self._removed:
            return False
        path: str | None = entry.path
        while path is not None:
            removed_at = self._removed.get(path)
            if removed_at is not None and removed_at > entry.seen_at:
                return True
            path = parent_of(path)
        return False

    def forget_removals(self) -> None:
        """Drop the tombstone ledger once no observation older than it can still be committed."""
        self._removed.clear()

    async def upsert_batch(
        self,
        entries: Sequence[ExtractedEntry],
        *,
        generation: int,
        completed_dirs: Iterable[str] = (),
        unreadable_dirs: Iterable[str] = (),
    ) -> Result[int]:
        """
        Write one crawl batch atomically.

        File rows are inserted or updated in place (clearing any older tombstone), their tag
        rows replaced, then directories whose children are all committed get `listed_generation`
        and unlistable directories get `unreadable`.

        Returns:
            Result with the number of file rows written
        """
        fresh = [entry for entry in entries if not self._removed_since(entry)]
        if len(fresh) < len(entries):
            logger.debug("Dropping %d entries tombstoned after they were read", len(entries) - len(fresh))
        entries = fresh
        completed = [(int(generation), path) for path in completed_dirs]
        unreadable = [(int(generation), path) for path in unreadable_dirs]
        if not entries and not completed and not unreadable:
            return Result.Ok(0)

        file_rows = [_file_row(entry, generation) for entry in entries]
        tag_rows = [
            (entry.path, tag.name, tag.color, tag.ordinal)
            for entry in entries
            for tag in entry.tags
        ]
        try:
            async with self.db.atransaction():
                if file_rows:
                    await self._write_many(_UPSERT_FILE_SQL, file_rows)
                    await self._write_many(_DELETE_TAGS_SQL, [(entry.path,) for entry in entries])
                if tag_rows:
                    await self._write_many(_INSERT_TAG_SQL, tag_rows)
                if completed:
                    await self._write_many(_MARK_LISTED_SQL, completed)
                if unreadable:
                    await self._write_many(_MARK_UNREADABLE_SQL, unreadable)
        except (StoreError, RuntimeError) as exc:
            logger.warning("Batch of %d entries rolled back: %s", len(file_rows), exc)
            return Result.Err(ErrorCode.STORE_ERROR, str(exc))
        return Result.Ok(len(file_rows))

    async def _write_many(self, sql: str, rows: list[tuple]) -> int:
        result = await self.db.aexecutemany(sql, rows)
        if not result.ok:
            raise StoreError(result.error or "Batch write failed", code=result.code)
        return int(result.data or 0)

    async def mark_deleted(self, paths: Iterable[str], *, subtree: bool = True) -> Result[int]:
        """
        Tombstone `paths` (and everything below them when `subtree`) and drop their tags.

        Returns:
            Result with the number of rows newly tombstoned
        """
        keys = list(dict.fromkeys(p for p in paths if p))
        if not keys:
            return Result.Ok(0)
        removed_at = time.monotonic()
        for key in keys:
            self._removed[key] = removed_at
        if subtree:
            where = _SUBTREE_WHERE
            params = [subtree_bounds(p) for p in keys]
        else:
            where = "path = ?"
            params = [(p,) for p in keys]
        try:
            async with self.db.atransaction():
                count = await self._write_many(f"UPDATE files SET deleted = 1 WHERE deleted = 0 AND {where}", params)
                await self._write_many(f"DELETE FROM file_tags WHERE {where}", params)
        except (StoreError, RuntimeError) as exc:
            logger.warning("Tombstoning %d path(s) failed: %s", len(keys), exc)
            return Result.Err(ErrorCode.STORE_ERROR, str(exc))
        if count:
            logger.debug("Tombstoned %d record(s)", count)
        return Result.Ok(count)

    async def sweep(self, root: str, generation: int) -> Result[int]:
        """
        Tombstone records under `root` that the crawl `generation` did not see and that
        no longer exist on disk.
        """
        with timer("tombstone sweep", logger):
            result = await self.db.aquery(
                f"SELECT path FROM files WHERE deleted = 0 AND generation < ? AND {_SUBTREE_WHERE}",
                (int(generation), *subtree_bounds(root)),
            )
            if not result.ok:
                return Result.Err(ErrorCode.STORE_ERROR, result.error or "Sweep query failed")
            candidates = [str(row["path"]) for row in result.data or []]
            if not candidates:
                return Result.Ok(0)
            absent = await asyncio.to_thread(_confirm_absent, candidates)
            if len(absent) < len(candidates):
                logger.debug("Sweep kept %d unvisited record(s) still on disk", len(candidates) - len(absent))
            return await self.mark_deleted(absent, subtree=False)

    async def current_generation(self) -> int:
        result = await self.db.aquery("SELECT value FROM metadata WHERE key = ?", (GENERATION_KEY,))
        if not result.ok or not result.data:
            return 0
        try:
            return int(result.data[0]["value"])
        except (TypeError, ValueError):
            logger.warning("Invalid %s value in store", GENERATION_KEY)
            return 0

    async def next_generation(self) -> Result[int]:
        """Advance and return the crawl generation counter."""
        try:
            async with self.db.atransaction():
                current = await self.db.aquery("SELECT value FROM metadata WHERE key = ?", (GENERATION_KEY,))
                if not current.ok:
                    raise StoreError(current.error or "Failed to read generation")
                value = int(current.data[0]["value"]) + 1 if current.data else 1
                written = await self.db.aexecute(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                    (GENERATION_KEY, str(value)),
                )
                if not written.ok:
                    raise StoreError(written.error or "Failed to write generation")
        except (StoreError, RuntimeError, ValueError) as exc:
            return Result.Err(ErrorCode.STORE_ERROR, str(exc))
        return Result.Ok(value)

    async def has_directory(self, path: str) -> bool:
        result = await self.db.aquery(
            "SELECT 1 FROM files WHERE path = ? AND is_dir = 1 AND deleted = 0 LIMIT 1",
            (path,),
        )
        return bool(result.ok and result.data)
