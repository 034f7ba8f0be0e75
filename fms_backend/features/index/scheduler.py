"""
Crawl scheduler.

Walks a directory tree breadth-first from an explicit work queue (never recursion),
farms listing and extraction out to the walker's thread pool, and commits results to
the store in bounded batches. Progress is published as immutable `CrawlState` snapshots.

Directory completeness: a directory's `listed_generation` is written in the same batch
as its last child, so a listing read mid-crawl can tell whether it is complete.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import threading
from collections import deque
from collections.abc import Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

from fms_shared import ErrorCode, Result, get_logger, log_structured, log_success, now

from ...config import (
    CRAWL_BATCH_MAX,
    CRAWL_BATCH_SIZE,
    CRAWL_COMMIT_INTERVAL_MS,
    STORE_RETRY_ATTEMPTS,
    STORE_RETRY_BASE_SECONDS,
    STORE_RETRY_MAX_SECONDS,
)
from ...utils import normalize_path, parent_of
from ..metadata.extractor import ExtractedEntry
from .crawl_state import CrawlState
from .fs_walker import DirTask, FileSystemWalker
from .store import IndexStore

logger = get_logger(__name__)

Subscriber = Callable[[CrawlState], None]


@dataclass
class _Batch:
    entries: list[ExtractedEntry] = field(default_factory=list)
    completed_dirs: list[str] = field(default_factory=list)
    unreadable_dirs: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def is_empty(self) -> bool:
        return not (self.entries or self.completed_dirs or self.unreadable_dirs)


@dataclass
class _Progress:
    visited: int = 0
    remaining: int = 0
    errors: int = 0
    skipped_cycles: int = 0
    discarded: int = 0


def _worker_outcome(fut: asyncio.Future, path: str) -> Result:
    """Result of a listing/extraction future; an exception escaping the worker fails only that entry."""
    try:
        return fut.result()
    except Exception as exc:
        logger.debug("Worker raised on %s", path, exc_info=exc)
        return Result.Err(ErrorCode.IO_ERROR, f"{type(exc).__name__}: {exc}: {path}")


@dataclass
class _CrawlRun:
    root: str
    max_depth: Optional[int]
    cancel_event: threading.Event = field(default_factory=threading.Event)


class CrawlScheduler:
    """
    Owns the crawl lifecycle and the live-update write path.

    Usage:
        scheduler = CrawlScheduler(store)
        scheduler.start("/Users/me/Documents")
        ...
        state = scheduler.snapshot()
        scheduler.cancel()
        await scheduler.close()
    """

    def __init__(
        self,
        store: IndexStore,
        *,
        walker: Optional[FileSystemWalker] = None,
        batch_size: int = CRAWL_BATCH_SIZE,
        commit_interval_ms: int = CRAWL_COMMIT_INTERVAL_MS,
        retry_attempts: int = STORE_RETRY_ATTEMPTS,
        retry_base_seconds: float = STORE_RETRY_BASE_SECONDS,
        retry_max_seconds: float = STORE_RETRY_MAX_SECONDS,
    ):
        self._store = store
        self._walker = walker or FileSystemWalker()
        self._batch_size = max(1, min(int(batch_size), CRAWL_BATCH_MAX))
        self._commit_interval_s = max(0.01, commit_interval_ms / 1000.0)
        self._retry_attempts = max(0, int(retry_attempts))
        self._retry_base_s = max(0.0, float(retry_base_seconds))
        self._retry_max_s = max(0.0, float(retry_max_seconds))

        self._state = CrawlState()
        self._state_lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._task: Optional[asyncio.Task] = None
        self._run: Optional[_CrawlRun] = None
        self._writers = 0

    # ==================== State ====================

    def snapshot(self) -> CrawlState:
        with self._state_lock:
            return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for state changes; returns the unsubscribe function."""
        with self._state_lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._state_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _publish(self, **changes) -> CrawlState:
        with self._state_lock:
            self._state = self._state.evolve(**changes)
            state = self._state
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(state)
            except Exception as exc:
                logger.debug("Crawl subscriber failed: %s", exc)
        return state

    def _publish_progress(self, progress: _Progress) -> None:
        self._publish(
            visited=progress.visited,
            remaining=progress.remaining,
            errors=progress.errors,
            skipped_cycles=progress.skipped_cycles,
        )

    # ==================== Crawl lifecycle ====================

    def start(self, root: str, *, max_depth: Optional[int] = None) -> asyncio.Task:
        """
        Begin crawling `root` in the background, superseding any running crawl.

        Returns:
            The task; awaiting it yields Result[CrawlState].
        """
        run = _CrawlRun(root=normalize_path(root), max_depth=max_depth)
        previous_task, previous_run = self._task, self._run
        if previous_run is not None:
            previous_run.cancel_event.set()
        self._run = run
        self._task = asyncio.create_task(self._supersede(previous_task, run), name=f"fms-crawl:{run.root}")
        return self._task

    async def crawl(self, root: str, *, max_depth: Optional[int] = None) -> Result[CrawlState]:
        return await self.start(root, max_depth=max_depth)

    def cancel(self) -> bool:
        """Request cancellation of the running crawl. Returns False when nothing is running."""
        run, task = self._run, self._task
        if run is None or task is None or task.done():
            return False
        run.cancel_event.set()
        logger.info("Crawl cancellation requested for %s", run.root)
        return True

    async def wait(self) -> CrawlState:
        task = self._task
        if task is not None:
            await asyncio.shield(task)
        return self.snapshot()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def close(self) -> None:
        self.cancel()
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Crawl did not stop within 10s; cancelling task")
                task.cancel()
        self._walker.shutdown(wait=False)

    async def _supersede(self, previous: Optional[asyncio.Task], run: _CrawlRun) -> Result[CrawlState]:
        if previous is not None and not previous.done():
            logger.info("Waiting for the previous crawl to stop")
            await asyncio.wait([previous])
        return await self._crawl(run)

    @asynccontextmanager
    async def _writing(self):
        """Bracket an operation that commits entries; the store's tombstone ledger is cleared when none remain."""
        self._writers += 1
        try:
            yield
        finally:
            self._writers -= 1
            if not self._writers:
                self._store.forget_removals()

    async def _crawl(self, run: _CrawlRun) -> Result[CrawlState]:
        async with self._writing():
            try:
                return await self._crawl_pass(run)
            finally:
                if self.snapshot().running:
                    self._publish(running=False, finished_at=now())

    async def _crawl_pass(self, run: _CrawlRun) -> Result[CrawlState]:
        generation_res = await self._store.next_generation()
        if not generation_res.ok:
            self._publish(degraded=True, last_store_error=generation_res.error)
            return Result.Err(ErrorCode.STORE_ERROR, generation_res.error or "Failed to start crawl")
        generation = int(generation_res.data or 0)

        started = now()
        self._publish(
            generation=generation,
            root=run.root,
            max_depth=run.max_depth,
            visited=0,
            remaining=1,
            errors=0,
            skipped_cycles=0,
            tombstoned=0,
            running=True,
            cancelled=False,
            completed=False,
            started_at=started,
            finished_at=None,
        )
        log_structured(logger, logging.INFO, "Crawl started", root=run.root, generation=generation, max_depth=run.max_depth)

        root_res = await self._root_entry(run.root)
        if not root_res.ok:
            logger.warning("Cannot crawl %s: %s", run.root, root_res.error)
            self._publish(running=False, errors=1, remaining=0, finished_at=now())
            return Result.Err(root_res.code, root_res.error or "Invalid crawl root")

        progress = _Progress()
        drained = await self._drain(
            [root_res.data],
            generation=generation,
            max_depth=run.max_depth,
            cancel_event=run.cancel_event,
            progress=progress,
            on_commit=self._publish_progress,
        )

        cancelled = not drained
        tombstoned = 0
        if not cancelled and run.max_depth is None:
            sweep_res = await self._store.sweep(run.root, generation)
            if sweep_res.ok:
                tombstoned = int(sweep_res.data or 0)
            else:
                self._mark_degraded(sweep_res.error)

        state = self._publish(
            visited=progress.visited,
            remaining=0 if not cancelled else progress.discarded,
            errors=progress.errors,
            skipped_cycles=progress.skipped_cycles,
            tombstoned=tombstoned,
            running=False,
            cancelled=cancelled,
            completed=not cancelled,
            finished_at=now(),
        )
        log_structured(
            logger,
            logging.INFO,
            "Crawl cancelled" if cancelled else "Crawl finished",
            root=run.root,
            generation=generation,
            visited=state.visited,
            errors=state.errors,
            skipped_cycles=state.skipped_cycles,
            tombstoned=tombstoned,
            duration_seconds=round((state.finished_at or started) - started, 3),
        )
        if not cancelled:
            log_success(logger, f"Indexed {state.visited} entries under {run.root}")
        return Result.Ok(state)

    async def _root_entry(self, root: str) -> Result[ExtractedEntry]:
        """Extract the walk root; its parent link is kept only when the parent is indexed."""
        root_res = await self._walker.extract(root)
        if not root_res.ok:
            return root_res
        entry = root_res.data
        if not entry.is_dir:
            return Result.Err(ErrorCode.INVALID_INPUT, f"Not a directory: {root}")
        parent = parent_of(entry.path)
        if parent is not None and not await self._store.has_directory(parent):
            entry = dataclasses.replace(entry, parent=None)
        return Result.Ok(entry)

    # ==================== Traversal ====================

    async def _drain(
        self,
        seeds: list[ExtractedEntry],
        *,
        generation: int,
        max_depth: Optional[int],
        cancel_event: threading.Event,
        progress: _Progress,
        on_commit: Optional[Callable[[_Progress], None]] = None,
    ) -> bool:
        """
        Run the work queue until it is empty.

        Returns:
            True when everything was processed, False when cancellation discarded queued work.
        """
        loop = asyncio.get_running_loop()
        dirs: deque[DirTask] = deque()
        children: deque[tuple[str, DirTask]] = deque()
        pending_children: dict[str, int] = {}
        in_flight: dict[asyncio.Future, tuple[str, DirTask, str]] = {}
        in_flight_cap = self._walker.max_workers * 2
        batch = _Batch()
        last_commit = loop.time()
        cancelled = False

        def _can_descend(depth: int) -> bool:
            return max_depth is None or depth <= max_depth

        for entry in seeds:
            batch.entries.append(entry)
            progress.visited += 1
            if entry.is_dir and _can_descend(0):
                dirs.append(DirTask(entry.path, frozenset({entry.real_path}), 0))

        while dirs or children or in_flight:
            if cancel_event.is_set() and (dirs or children):
                progress.discarded += len(dirs) + len(children)
                dirs.clear()
                children.clear()
                cancelled = True

            # Extraction first so open directories finish before new ones are listed.
            while children and len(in_flight) < in_flight_cap:
                path, owner = children.popleft()
                in_flight[self._walker.submit_extract(path, owner.ancestors)] = ("extract", owner, path)
            while dirs and len(in_flight) < in_flight_cap:
                task = dirs.popleft()
                in_flight[self._walker.submit_list(task.path)] = ("list", task, task.path)
            progress.remaining = len(dirs) + len(children) + len(in_flight)

            if not in_flight:
                break

            timeout = max(0.0, self._commit_interval_s - (loop.time() - last_commit))
            done, _ = await asyncio.wait(in_flight.keys(), timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            for fut in done:
                kind, task, path = in_flight.pop(fut)
                outcome = _worker_outcome(fut, path)
                if kind == "list":
                    self._on_listed(task, outcome, batch, children, pending_children, progress)
                else:
                    self._on_extracted(task, outcome, batch, dirs, pending_children, progress, _can_descend)
                if len(batch) >= self._batch_size:
                    await self._commit(batch, generation)
                    batch = _Batch()
                    last_commit = loop.time()
                    if on_commit is not None:
                        on_commit(progress)

            if loop.time() - last_commit >= self._commit_interval_s:
                if not batch.is_empty():
                    await self._commit(batch, generation)
                    batch = _Batch()
                    if on_commit is not None:
                        on_commit(progress)
                last_commit = loop.time()

        progress.remaining = 0
        if not batch.is_empty():
            await self._commit(batch, generation)
        return not (cancelled or cancel_event.is_set())

    def _on_listed(
        self,
        task: DirTask,
        result: Result[list[str]],
        batch: _Batch,
        children: deque[tuple[str, DirTask]],
        pending_children: dict[str, int],
        progress: _Progress,
    ) -> None:
        if not result.ok:
            progress.errors += 1
            logger.warning("Cannot list %s: %s", task.path, result.error)
            batch.unreadable_dirs.append(task.path)
            return
        names = result.data or []
        if not names:
            batch.completed_dirs.append(task.path)
            return
        pending_children[task.path] = len(names)
        children.extend((path, task) for path in names)

    def _on_extracted(
        self,
        owner: DirTask,
        result: Result[ExtractedEntry],
        batch: _Batch,
        dirs: deque[DirTask],
        pending_children: dict[str, int],
        progress: _Progress,
        can_descend: Callable[[int], bool],
    ) -> None:
        if result.ok:
            entry = result.data
            batch.entries.append(entry)
            progress.visited += 1
            if entry.is_dir and can_descend(owner.depth + 1):
                dirs.append(DirTask(entry.path, owner.ancestors | {entry.real_path}, owner.depth + 1))
        elif result.has_code(ErrorCode.SKIPPED_CYCLE):
            progress.skipped_cycles += 1
            logger.debug("Skipping %s", result.error)
        elif result.has_code(ErrorCode.NOT_FOUND):
            logger.debug("Entry vanished during crawl: %s", result.error)
        else:
            progress.errors += 1
            logger.warning("Cannot read entry: %s", result.error)

        remaining = pending_children.get(owner.path, 0) - 1
        if remaining <= 0:
            pending_children.pop(owner.path, None)
            batch.completed_dirs.append(owner.path)
        else:
            pending_children[owner.path] = remaining

    # ==================== Store writes ====================

    async def _commit(self, batch: _Batch, generation: int) -> bool:
        """Write a batch, retrying with backoff; flags the state degraded when retries run out."""
        if batch.is_empty():
            return True
        last_error: Optional[str] = None
        for attempt in range(self._retry_attempts + 1):
            result = await self._store.upsert_batch(
                batch.entries,
                generation=generation,
                completed_dirs=batch.completed_dirs,
                unreadable_dirs=batch.unreadable_dirs,
            )
            if result.ok:
                return True
            last_error = result.error
            if attempt < self._retry_attempts:
                delay = min(self._retry_max_s, self._retry_base_s * (2 ** attempt))
                logger.debug("Batch commit failed (attempt %d), retrying in %.2fs: %s", attempt + 1, delay, last_error)
                await asyncio.sleep(delay)
        self._mark_degraded(last_error)
        return False

    def _mark_degraded(self, error: Optional[str]) -> None:
        logger.warning("Index store unavailable, indexing degraded: %s", error)
        self._publish(degraded=True, last_store_error=error or "Store write failed")

    # ==================== Live updates ====================

    async def _live_generation(self) -> int:
        generation = self.snapshot().generation or await self._store.current_generation()
        if generation:
            return generation
        res = await self._store.next_generation()
        return int(res.data or 0) if res.ok else 0

    async def refresh_paths(self, paths: Iterable[str]) -> Result[int]:
        """
        Re-index created or modified paths in the current generation.

        A directory is walked as a subtree (no sweep); a path that no longer exists is
        tombstoned instead.
        """
        keys = list(dict.fromkeys(normalize_path(p) for p in paths if p))
        if not keys:
            return Result.Ok(0)
        async with self._writing():
            return await self._refresh(keys)

    async def _refresh(self, keys: list[str]) -> Result[int]:
        generation = await self._live_generation()

        crawl_root = self.snapshot().root
        seeds: list[ExtractedEntry] = []
        gone: list[str] = []
        for key in keys:
            res = await self._walker.extract(key)
            if res.ok:
                entry = res.data
                if entry.parent is not None and not await self._store.has_directory(entry.parent):
                    if entry.path != crawl_root:
                        # Picked up when its directory is first listed.
                        logger.debug("Refresh skipped %s: parent not indexed", key)
                        continue
                    entry = dataclasses.replace(entry, parent=None)
                seeds.append(entry)
            elif res.has_code(ErrorCode.NOT_FOUND):
                gone.append(key)
            else:
                logger.debug("Refresh skipped %s: %s", key, res.error)

        if gone:
            await self.remove_paths(gone)
        if not seeds:
            return Result.Ok(0)

        progress = _Progress()
        await self._drain(
            seeds,
            generation=generation,
            max_depth=None,
            cancel_event=threading.Event(),
            progress=progress,
        )
        return Result.Ok(progress.visited)

    async def remove_paths(self, paths: Iterable[str]) -> Result[int]:
        """Tombstone paths (and their subtrees) immediately."""
        keys = [normalize_path(p) for p in paths if p]
        result = await self._store.mark_deleted(keys)
        if not result.ok:
            self._mark_degraded(result.error)
        return result

    async def index_directory_shallow(self, path: str) -> Result[int]:
        """Index one directory and its immediate children (navigation into an unindexed folder)."""
        async with self._writing():
            return await self._index_shallow(path)

    async def _index_shallow(self, path: str) -> Result[int]:
        key = normalize_path(path)
        if not os.path.isdir(key):
            return Result.Err(ErrorCode.NOT_FOUND, f"Directory not found: {key}")
        generation = await self._live_generation()
        root_res = await self._root_entry(key)
        if not root_res.ok:
            return Result.Err(root_res.code, root_res.error or "Cannot index directory")
        progress = _Progress()
        await self._drain(
            [root_res.data],
            generation=generation,
            max_depth=0,
            cancel_event=threading.Event(),
            progress=progress,
        )
        logger.debug("Shallow index of %s: %d entries", key, progress.visited)
        return Result.Ok(progress.visited)
