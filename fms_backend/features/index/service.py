"""
Index Service - crawl control, live updates and queries behind one object.

Coordinates the specialized components:
- IndexStore: atomic batch writes, tombstones, generation counter
- CrawlScheduler: background crawl, live refresh/remove, shallow indexing
- IndexSearcher: folder, tag and free-text queries
- IndexWatcher: filesystem change events (optional)
"""
from __future__ import annotations

import asyncio
from typing import Optional

from fms_shared import ErrorCode, Result, get_logger

from ...adapters.db.sqlite import Sqlite
from ...utils import normalize_path
from .crawl_state import CrawlState
from .fs_walker import FileSystemWalker
from .models import FileRecord, Listing, SearchResults, TagSummary
from .scheduler import CrawlScheduler
from .searcher import IndexSearcher
from .store import IndexStore
from .watcher import IndexWatcher

logger = get_logger(__name__)


class IndexService:
    """
    Handles crawling and querying of the file index.

    Navigation into a folder that has not been indexed yet returns NOT_INDEXED_YET
    and starts a shallow index of that folder in the background.
    """

    def __init__(self, db: Sqlite, *, walker: Optional[FileSystemWalker] = None, **scheduler_options):
        self.db = db
        self.store = IndexStore(db)
        self.scheduler = CrawlScheduler(self.store, walker=walker, **scheduler_options)
        self.searcher = IndexSearcher(db, self.scheduler.snapshot)
        self.watcher: Optional[IndexWatcher] = None
        self._shallow_tasks: dict[str, asyncio.Task] = {}

    # ==================== Crawl ====================

    def start_crawl(self, root: str, *, max_depth: Optional[int] = None) -> asyncio.Task:
        return self.scheduler.start(root, max_depth=max_depth)

    async def crawl(self, root: str, *, max_depth: Optional[int] = None) -> Result[CrawlState]:
        return await self.scheduler.crawl(root, max_depth=max_depth)

    def cancel_crawl(self) -> bool:
        return self.scheduler.cancel()

    def crawl_state(self) -> CrawlState:
        return self.scheduler.snapshot()

    # ==================== Watcher ====================

    async def start_watcher(self, root: str, *, ignored_paths: tuple[str, ...] = (), **watcher_options) -> bool:
        if self.watcher is None:
            self.watcher = IndexWatcher(
                self.scheduler.refresh_paths,
                self.scheduler.remove_paths,
                ignored_paths=ignored_paths,
                **watcher_options,
            )
        return await self.watcher.start(root)

    async def stop_watcher(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()

    # ==================== Queries ====================

    async def list_children(self, directory: str, *, include_hidden: bool = True) -> Result[Listing]:
        result = await self.searcher.list_children(directory, include_hidden=include_hidden)
        if not result.ok and result.has_code(ErrorCode.NOT_INDEXED_YET):
            scheduled = self.schedule_shallow_index(directory)
            return Result.Err(result.code, result.error or "Not indexed yet", **result.meta, indexing=scheduled)
        return result

    def schedule_shallow_index(self, directory: str) -> bool:
        """Index `directory` one level deep in the background (one task per directory)."""
        key = normalize_path(directory)
        existing = self._shallow_tasks.get(key)
        if existing is not None and not existing.done():
            return True
        task = asyncio.create_task(self.scheduler.index_directory_shallow(key), name=f"fms-shallow:{key}")
        self._shallow_tasks[key] = task
        task.add_done_callback(lambda _t, k=key: self._shallow_tasks.pop(k, None))
        return True

    async def list_tags(self) -> Result[list[TagSummary]]:
        return await self.searcher.list_tags()

    async def files_for_tag(self, tag: str, query: str = "") -> Result[list[FileRecord]]:
        return await self.searcher.files_for_tag(tag, query)

    async def search(self, query: str, *, limit: Optional[int] = None) -> Result[SearchResults]:
        return await self.searcher.search(query, limit=limit)

    async def search_in_directory(self, directory: str, query: str) -> Result[Listing]:
        return await self.searcher.search_in_directory(directory, query)

    async def get_record(self, path: str) -> Result[Optional[FileRecord]]:
        return await self.searcher.get_record(path)

    # ==================== Lifecycle ====================

    async def close(self) -> None:
        await self.stop_watcher()
        tasks = list(self._shallow_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.scheduler.close()
