"""
Crawl progress snapshots.

`CrawlState` is frozen: the scheduler publishes a new instance (with a bumped
`version`) on every change and readers hold on to whichever snapshot they got.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Optional

from fms_shared import format_timestamp


@dataclass(frozen=True)
class CrawlState:
    generation: int = 0
    root: Optional[str] = None
    max_depth: Optional[int] = None
    visited: int = 0
    remaining: int = 0
    errors: int = 0
    skipped_cycles: int = 0
    tombstoned: int = 0
    running: bool = False
    cancelled: bool = False
    completed: bool = False
    degraded: bool = False
    last_store_error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    version: int = 0

    def evolve(self, **changes: Any) -> "CrawlState":
        """Copy with `changes` applied and the version bumped."""
        changes["version"] = self.version + 1
        return dataclasses.replace(self, **changes)

    @property
    def idle(self) -> bool:
        return self.root is None and not self.running

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["started_at"] = format_timestamp(self.started_at) if self.started_at else None
        data["finished_at"] = format_timestamp(self.finished_at) if self.finished_at else None
        return data
