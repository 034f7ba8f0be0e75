"""
Index searcher - folder listing, tag navigation and free-text search over the store.

Reads never wait on the crawl: they run on pooled connections and, with WAL, see the
last committed batch.
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any, Optional

from fms_shared import ErrorCode, Result, get_logger

from ...adapters.db.sqlite import Sqlite
from ...config import SEARCH_FTS_MIN_CHARS, SEARCH_MAX_QUERY_LENGTH, SEARCH_MAX_RESULTS
from ...utils import is_hidden_name, is_within, normalize_path
from ..metadata.tags import TagAssociation
from .crawl_state import CrawlState
from .models import FileRecord, Listing, SearchResults, TagSummary

logger = get_logger(__name__)

MAX_TAG_LOOKUP = 500

_FILE_COLUMNS = "f.path, f.parent, f.name, f.is_dir, f.size, f.mtime, f.ext, f.kind, f.generation, f.unreadable, f.tag_fault"

# 0 exact name, 1 name prefix, 2 name substring, 3 tag match, 4 matched on path only.
_RANK_SQL = """
CASE
    WHEN LOWER(f.name) = LOWER(?) THEN 0
    WHEN substr(LOWER(f.name), 1, length(?)) = LOWER(?) THEN 1
    WHEN instr(LOWER(f.name), LOWER(?)) > 0 THEN 2
    WHEN instr(LOWER(f.tags_text), LOWER(?)) > 0 THEN 3
    ELSE 4
END
"""


def _rank_params(query: str) -> tuple[str, ...]:
    return (query, query, query, query, query)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _fts_phrase(query: str) -> str:
    """Quote the whole query as one FTS5 phrase (trigram substring match)."""
    return '"' + query.replace('"', '""') + '"'


def _listing_sort_key(record: FileRecord) -> tuple:
    return (0 if record.is_dir else 1, record.name.casefold(), record.name)


def _name_sort_key(record: FileRecord) -> tuple:
    return (record.name.casefold(), record.name, record.path)


class IndexSearcher:
    """
    Query engine.

    Args:
        db: Database adapter instance
        state_provider: Returns the current crawl snapshot (drives the `partial` flags)
    """

    def __init__(self, db: Sqlite, state_provider: Optional[Callable[[], CrawlState]] = None):
        self.db = db
        self._state_provider = state_provider or CrawlState

    def _state(self) -> CrawlState:
        return self._state_provider()

    # ==================== Folder navigation ====================

    async def list_children(self, directory: str, *, include_hidden: bool = True) -> Result[Listing]:
        """
        Immediate children of `directory`: directories first, then files, each by
        case-insensitive name.

        Returns NOT_INDEXED_YET when the directory has no record, or has never been
        listed and has no committed children.
        """
        dir_res = await self._directory_row(directory)
        if not dir_res.ok:
            return dir_res
        dir_row = dir_res.data
        key = str(dir_row["path"])

        rows_res = await self.db.aquery(
            f"SELECT {_FILE_COLUMNS} FROM files f WHERE f.parent = ? AND f.deleted = 0",
            (key,),
        )
        if not rows_res.ok:
            return Result.Err(ErrorCode.STORE_ERROR, rows_res.error or "Failed to list directory")
        rows = rows_res.data or []

        listed_generation = int(dir_row.get("listed_generation") or 0)
        if listed_generation == 0 and not rows:
            return Result.Err(ErrorCode.NOT_INDEXED_YET, f"Not indexed yet: {key}", path=key)

        records = await self._records(rows)
        if not include_hidden:
            records = [r for r in records if not is_hidden_name(r.name)]
        records.sort(key=_listing_sort_key)
        return Result.Ok(
            Listing(
                directory=key,
                entries=records,
                partial=self._is_partial(key, listed_generation),
                unreadable=bool(dir_row.get("unreadable")),
            )
        )

    async def _directory_row(self, directory: str) -> Result[dict[str, Any]]:
        if not str(directory or "").strip():
            return Result.Err(ErrorCode.INVALID_INPUT, "Directory path is required")
        key = normalize_path(directory)
        result = await self.db.aquery(
            "SELECT path, is_dir, deleted, unreadable, listed_generation FROM files WHERE path = ?",
            (key,),
        )
        if not result.ok:
            return Result.Err(ErrorCode.STORE_ERROR, result.error or "Directory lookup failed")
        row = (result.data or [None])[0]
        if not row or row.get("deleted"):
            return Result.Err(ErrorCode.NOT_INDEXED_YET, f"Not indexed yet: {key}", path=key)
        if not row.get("is_dir"):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Not a directory: {key}", path=key)
        return Result.Ok(row)

    def _is_partial(self, directory: str, listed_generation: int) -> bool:
        if listed_generation == 0:
            return True
        state = self._state()
        if state.completed or not state.root:
            return False
        return is_within(directory, state.root) and listed_generation < state.generation

    def _crawl_incomplete(self) -> bool:
        state = self._state()
        return state.running or (state.root is not None and not state.completed)

    # ==================== Tag navigation ====================

    async def list_tags(self) -> Result[list[TagSummary]]:
        """Every tag on a live file with its file count; most used first, then by name."""
        result = await self.db.aquery(
            """
            SELECT t.tag AS name, MAX(t.color) AS color, COUNT(*) AS count
            FROM file_tags t
            JOIN files f ON f.path = t.path
            WHERE f.deleted = 0
            GROUP BY t.tag
            """
        )
        if not result.ok:
            return Result.Err(ErrorCode.STORE_ERROR, result.error or "Failed to list tags")
        tags = [
            TagSummary(name=str(row["name"]), color=row.get("color"), count=int(row["count"] or 0))
            for row in result.data or []
        ]
        tags.sort(key=lambda t: (-t.count, t.name.casefold(), t.name))
        return Result.Ok(tags)

    async def files_for_tag(self, tag: str, query: str = "") -> Result[list[FileRecord]]:
        """
        Files carrying `tag` (exact name), optionally narrowed to those whose name or
        path contains `query` (case-insensitive).
        """
        name = str(tag or "").strip()
        if not name:
            return Result.Err(ErrorCode.INVALID_INPUT, "Tag name is required")
        result = await self.db.aquery(
            f"""
            SELECT {_FILE_COLUMNS}
            FROM file_tags t
            JOIN files f ON f.path = t.path
            WHERE t.tag = ? AND f.deleted = 0
            """,
            (name,),
        )
        if not result.ok:
            return Result.Err(ErrorCode.STORE_ERROR, result.error or "Failed to load tagged files")
        records = await self._records(result.data or [])
        needle = str(query or "").strip().casefold()
        if needle:
            records = [r for r in records if needle in r.name.casefold() or needle in r.path.casefold()]
        records.sort(key=_name_sort_key)
        return Result.Ok(records)

    # ==================== Free-text search ====================

    async def search(self, query: str, *, limit: Optional[int] = None) -> Result[SearchResults]:
        """
        Ranked search over names, tags and paths.

        An empty query matches nothing. Queries of SEARCH_FTS_MIN_CHARS or more use the
        trigram index; shorter ones scan names and tags. A store failure yields empty
        results flagged `degraded` rather than an error.
        """
        text = str(query or "").strip()
        partial = self._crawl_incomplete()
        if not text:
            return Result.Ok(SearchResults.empty(text, partial=partial))
        if len(text) > SEARCH_MAX_QUERY_LENGTH:
            return Result.Err(
                ErrorCode.INVALID_INPUT,
                f"Search queries must be at most {SEARCH_MAX_QUERY_LENGTH} characters",
            )

        cap = SEARCH_MAX_RESULTS if limit is None else max(1, min(int(limit), SEARCH_MAX_RESULTS))
        if len(text) >= SEARCH_FTS_MIN_CHARS:
            sql = f"""
                SELECT {_FILE_COLUMNS}, {_RANK_SQL} AS tier
                FROM files_fts
                JOIN files f ON f.id = files_fts.rowid
                WHERE files_fts MATCH ? AND f.deleted = 0
                ORDER BY tier, LOWER(f.name), f.name, f.path
                LIMIT ?
            """
            params: tuple = (*_rank_params(text), _fts_phrase(text), cap + 1)
        else:
            pattern = f"%{_escape_like(text)}%"
            sql = f"""
                SELECT {_FILE_COLUMNS}, {_RANK_SQL} AS tier
                FROM files f
                WHERE f.deleted = 0
                  AND (f.name LIKE ? ESCAPE '\\' OR f.tags_text LIKE ? ESCAPE '\\')
                ORDER BY tier, LOWER(f.name), f.name, f.path
                LIMIT ?
            """
            params = (*_rank_params(text), pattern, pattern, cap + 1)

        result = await self.db.aquery(sql, params)
        if not result.ok:
            logger.warning("Search failed, returning degraded results: %s", result.error)
            return Result.Ok(SearchResults.empty(text, partial=partial, degraded=True))

        rows = result.data or []
        truncated = len(rows) > cap
        rows = rows[:cap]
        ranks = {str(row["path"]): int(row["tier"]) for row in rows}
        records = await self._records(rows)
        records.sort(key=lambda r: (ranks.get(r.path, 4), *_name_sort_key(r)))
        logger.debug("Search %r: %d result(s)%s", text, len(records), " (truncated)" if truncated else "")
        return Result.Ok(
            SearchResults(
                query=text,
                entries=records,
                truncated=truncated,
                partial=partial,
                degraded=self._state().degraded,
            )
        )

    async def search_in_directory(self, directory: str, query: str) -> Result[Listing]:
        """Children of `directory` whose name or tags contain `query`; empty query lists everything."""
        text = str(query or "").strip()
        if not text:
            return await self.list_children(directory)
        dir_res = await self._directory_row(directory)
        if not dir_res.ok:
            return dir_res
        dir_row = dir_res.data
        key = str(dir_row["path"])
        pattern = f"%{_escape_like(text)}%"
        result = await self.db.aquery(
            f"""
            SELECT {_FILE_COLUMNS}
            FROM files f
            WHERE f.parent = ? AND f.deleted = 0
              AND (f.name LIKE ? ESCAPE '\\' OR f.tags_text LIKE ? ESCAPE '\\')
            LIMIT ?
            """,
            (key, pattern, pattern, SEARCH_MAX_RESULTS),
        )
        if not result.ok:
            return Result.Err(ErrorCode.STORE_ERROR, result.error or "Directory search failed")
        records = await self._records(result.data or [])
        records.sort(key=_listing_sort_key)
        listed_generation = int(dir_row.get("listed_generation") or 0)
        return Result.Ok(
            Listing(
                directory=key,
                entries=records,
                partial=self._is_partial(key, listed_generation),
                unreadable=bool(dir_row.get("unreadable")),
            )
        )

    # ==================== Single record ====================

    async def get_record(self, path: str) -> Result[Optional[FileRecord]]:
        key = normalize_path(path)
        result = await self.db.aquery(
            f"SELECT {_FILE_COLUMNS} FROM files f WHERE f.path = ? AND f.deleted = 0",
            (key,),
        )
        if not result.ok:
            return Result.Err(ErrorCode.STORE_ERROR, result.error or "Lookup failed")
        records = await self._records(result.data or [])
        return Result.Ok(records[0] if records else None)

    # ==================== Hydration ====================

    async def _records(self, rows: list[dict[str, Any]]) -> list[FileRecord]:
        tags = await self._tags_for_paths([str(row["path"]) for row in rows])
        return [FileRecord.from_row(row, tags.get(str(row["path"]), ())) for row in rows]

    async def _tags_for_paths(self, paths: list[str]) -> dict[str, tuple[TagAssociation, ...]]:
        out: dict[str, list[TagAssociation]] = {}
        for start in range(0, len(paths), MAX_TAG_LOOKUP):
            chunk = paths[start:start + MAX_TAG_LOOKUP]
            placeholders = ",".join("?" for _ in chunk)
            result = await self.db.aquery(
                f"SELECT path, tag, color, ordinal FROM file_tags WHERE path IN ({placeholders}) ORDER BY path, ordinal",
                tuple(chunk),
            )
            if not result.ok:
                logger.debug("Tag lookup failed: %s", result.error)
                continue
            for row in result.data or []:
                out.setdefault(str(row["path"]), []).append(
                    TagAssociation(name=str(row["tag"]), color=row.get("color"), ordinal=int(row["ordinal"] or 0))
                )
        return {path: tuple(items) for path, items in out.items()}
