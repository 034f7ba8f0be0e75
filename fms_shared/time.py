"""
Clock helpers.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager


def now() -> float:
    """Wall-clock seconds since the epoch."""
    return time.time()


def format_timestamp(ts: float | None = None) -> str:
    """Local time as `YYYY-MM-DDTHH:MM:SS` (crawl start/finish in status payloads)."""
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(now() if ts is None else ts))


@contextmanager
def timer(label: str, logger: logging.Logger, *, level: int = logging.DEBUG) -> Iterator[None]:
    """
    Log how long the block took.

        with timer("tombstone sweep", logger):
            ...
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.log(level, "%s took %.3fs", label, time.perf_counter() - start)
