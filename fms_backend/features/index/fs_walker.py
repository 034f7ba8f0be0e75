"""
FileSystemWalker - runs directory listing and entry extraction on a bounded thread pool.

The crawl coordinator stays on the event loop; every filesystem call goes through
`submit_list` / `submit_extract`, which return asyncio futures resolved by the pool.
"""
from __future__ import annotations

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from fms_shared import Result, get_logger

from ...config import CRAWL_FOLLOW_SYMLINKS, CRAWL_MAX_WORKERS
from ..metadata.extractor import ExtractedEntry, TagReader, extract, list_directory, read_tag_bytes

logger = get_logger(__name__)


@dataclass(frozen=True)
class DirTask:
    """A directory waiting to be listed."""

    path: str
    # Real paths of this directory and everything above it in the current walk.
    ancestors: frozenset[str]
    depth: int = 0


class FileSystemWalker:
    """
    Thread-pool front end for the metadata extractor.

    Each scheduler owns one walker; `shutdown()` releases its threads.
    """

    def __init__(
        self,
        max_workers: int = CRAWL_MAX_WORKERS,
        *,
        follow_symlinks: bool = CRAWL_FOLLOW_SYMLINKS,
        tag_reader: TagReader = read_tag_bytes,
    ) -> None:
        self._max_workers = max(1, int(max_workers))
        self._follow_symlinks = bool(follow_symlinks)
        self._tag_reader = tag_reader
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def follow_symlinks(self) -> bool:
        return self._follow_symlinks

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="fms-crawl")
        return self._executor

    def extract_now(self, path: str, ancestors: frozenset[str] = frozenset()) -> Result[ExtractedEntry]:
        """Extract on the calling thread."""
        return extract(
            path,
            ancestors=ancestors,
            follow_symlinks=self._follow_symlinks,
            tag_reader=self._tag_reader,
        )

    def submit_extract(self, path: str, ancestors: frozenset[str] = frozenset()) -> "asyncio.Future[Result[ExtractedEntry]]":
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._pool(), functools.partial(self.extract_now, path, ancestors))

    def submit_list(self, path: str) -> "asyncio.Future[Result[list[str]]]":
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._pool(), list_directory, path)

    async def extract(self, path: str, ancestors: frozenset[str] = frozenset()) -> Result[ExtractedEntry]:
        return await self.submit_extract(path, ancestors)

    def shutdown(self, wait: bool = False) -> None:
        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
            logger.debug("Crawl pool shut down")
