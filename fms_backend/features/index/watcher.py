"""
Filesystem change watcher.

watchdog delivers events on its observer thread; `DebouncedWatchHandler` collapses them
per path (last event wins) and hands them to the crawl write path on the event loop once
per debounce window:

- created / modified -> refresh (re-extract; a directory is re-walked)
- deleted -> remove (immediate tombstone of the path and its subtree)
- moved -> remove(source) + refresh(destination)
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from threading import Lock
from typing import Any, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from fms_shared import get_logger, log_success

from ...config import WATCHER_DEBOUNCE_MS, WATCHER_FLUSH_MAX_PATHS, WATCHER_PENDING_MAX
from ...utils import is_within, normalize_path

logger = get_logger(__name__)

PathsCallback = Callable[[list[str]], Awaitable[Any]]

REFRESH = "refresh"
REMOVE = "remove"

_PENDING_LIMIT_WARN_INTERVAL = 30.0


class DebouncedWatchHandler(FileSystemEventHandler):
    """
    Collects watchdog events and flushes them in batches.

    The first event after a flush arms a timer; everything that arrives before it fires
    goes out together, so a change is applied at most one debounce window after it
    happened even under a steady event stream.
    """

    def __init__(
        self,
        on_refresh: PathsCallback,
        on_remove: PathsCallback,
        loop: asyncio.AbstractEventLoop,
        *,
        debounce_ms: int = WATCHER_DEBOUNCE_MS,
        pending_max: int = WATCHER_PENDING_MAX,
        flush_max_paths: int = WATCHER_FLUSH_MAX_PATHS,
        ignored_paths: Iterable[str] = (),
    ):
        super().__init__()
        self._on_refresh = on_refresh
        self._on_remove = on_remove
        self._loop = loop
        self._debounce_s = max(0.0, debounce_ms / 1000.0)
        self._pending_max = max(0, int(pending_max))
        self._flush_max_paths = max(1, int(flush_max_paths))
        self._ignored = [normalize_path(p) for p in ignored_paths if p]

        self._lock = Lock()
        self._pending: dict[str, str] = {}  # path -> action
        self._overflow: dict[str, str] = {}  # held back while pending is at capacity
        self._flush_timer: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._last_pending_warning = 0.0

    # ---- watchdog callbacks (observer thread) ----

    def on_created(self, event: FileSystemEvent) -> None:
        self._queue(event.src_path, REFRESH)

    def on_modified(self, event: FileSystemEvent) -> None:
        # A directory "modified" event only reports that its children changed;
        # the children's own events carry the change.
        if event.is_directory:
            return
        self._queue(event.src_path, REFRESH)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._queue(event.src_path, REMOVE)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._queue(event.src_path, REMOVE)
        self._queue(getattr(event, "dest_path", ""), REFRESH)

    # ---- queueing ----

    def _is_ignored(self, path: str) -> bool:
        return any(is_within(path, ignored) for ignored in self._ignored)

    def _queue(self, path: Any, action: str) -> None:
        if isinstance(path, bytes):
            path = path.decode("utf-8", "surrogateescape")
        if not path:
            return
        key = normalize_path(str(path))
        if self._is_ignored(key):
            return
        with self._lock:
            if key in self._pending or self._pending_max <= 0 or len(self._pending) < self._pending_max:
                self._pending[key] = action
            else:
                self._overflow[key] = action
                self._maybe_log_pending_limit(key)
        try:
            self._loop.call_soon_threadsafe(self._arm_flush)
        except RuntimeError:
            # Loop already closed during shutdown.
            logger.debug("Watcher event dropped after loop shutdown: %s", key)

    def _maybe_log_pending_limit(self, path: str) -> None:
        now = time.monotonic()
        if now - self._last_pending_warning < _PENDING_LIMIT_WARN_INTERVAL:
            return
        self._last_pending_warning = now
        logger.warning("Watcher pending queue capped at %d entries; deferring %s", self._pending_max, path)

    def _arm_flush(self) -> None:
        """Runs on the loop thread."""
        if self._flush_timer is not None:
            return
        self._flush_timer = self._loop.call_later(self._debounce_s, self._start_flush)

    def _start_flush(self) -> None:
        self._flush_timer = None
        task = self._loop.create_task(self._flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    # ---- flushing ----

    def _drain(self) -> list[tuple[str, str]]:
        with self._lock:
            items = list(self._pending.items())
            self._pending.clear()
            # Overflow moves up into the next window.
            for key, action in list(self._overflow.items()):
                if self._pending_max > 0 and len(self._pending) >= self._pending_max:
                    break
                self._pending[key] = action
                del self._overflow[key]
            if len(items) > self._flush_max_paths:
                deferred = items[self._flush_max_paths:]
                items = items[: self._flush_max_paths]
                for key, action in deferred:
                    self._pending.setdefault(key, action)
            has_more = bool(self._pending or self._overflow)
        if has_more:
            self._arm_flush()
        return items

    async def _flush(self) -> None:
        items = self._drain()
        if not items:
            return
        removed = [path for path, action in items if action == REMOVE]
        refreshed = [path for path, action in items if action == REFRESH]
        logger.debug("Watcher flush: %d removed, %d refreshed", len(removed), len(refreshed))
        if removed:
            try:
                await self._on_remove(removed)
            except Exception as exc:
                logger.warning("Watcher remove failed: %s", exc)
        if refreshed:
            try:
                await self._on_refresh(refreshed)
            except Exception as exc:
                logger.warning("Watcher refresh failed: %s", exc)

    def flush_pending(self) -> bool:
        """Flush now instead of waiting for the timer. Safe to call from any thread."""
        def _flush_now() -> None:
            if self._flush_timer is not None:
                self._flush_timer.cancel()
            self._start_flush()

        try:
            self._loop.call_soon_threadsafe(_flush_now)
        except RuntimeError:
            return False
        return True

    async def wait_idle(self) -> None:
        """Wait for in-progress flushes (used on shutdown and by tests)."""
        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

    def get_pending_count(self) -> int:
        with self._lock:
            return len(self._pending) + len(self._overflow)

    def cancel_timer(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None


class IndexWatcher:
    """
    Watches the crawl root recursively and feeds changes into the crawl scheduler.

    Usage:
        watcher = IndexWatcher(scheduler.refresh_paths, scheduler.remove_paths)
        await watcher.start("/Users/me/Documents")
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        on_refresh: PathsCallback,
        on_remove: PathsCallback,
        *,
        ignored_paths: Iterable[str] = (),
        debounce_ms: int = WATCHER_DEBOUNCE_MS,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self._on_refresh = on_refresh
        self._on_remove = on_remove
        self._ignored_paths = list(ignored_paths)
        self._debounce_ms = debounce_ms
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._handler: Optional[DebouncedWatchHandler] = None
        self._root: Optional[str] = None
        self._running = False

    async def start(self, root: str, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Start watching `root`. Returns False when the path is not a watchable directory."""
        if self._running:
            if self._root == normalize_path(root):
                return True
            await self.stop()

        loop = loop or asyncio.get_running_loop()
        key = normalize_path(root)
        self._handler = DebouncedWatchHandler(
            self._on_refresh,
            self._on_remove,
            loop,
            debounce_ms=self._debounce_ms,
            ignored_paths=self._ignored_paths,
        )
        observer = self._observer_factory()
        try:
            observer.schedule(self._handler, key, recursive=True)
            observer.start()
        except OSError as exc:
            logger.warning("Failed to watch %s: %s", key, exc)
            self._handler = None
            return False
        self._observer = observer
        self._root = key
        self._running = True
        log_success(logger, f"File watcher started for {key}")
        return True

    async def stop(self) -> None:
        if not self._running:
            return
        observer, handler = self._observer, self._handler
        self._observer = None
        self._running = False
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 2.0)
        if handler is not None:
            handler.cancel_timer()
            await handler.wait_idle()
        self._handler = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def watched_directory(self) -> Optional[str]:
        return self._root if self._running else None

    def flush_pending(self) -> bool:
        if not self._handler:
            return False
        return self._handler.flush_pending()

    def get_pending_count(self) -> int:
        if not self._handler:
            return 0
        return self._handler.get_pending_count()
