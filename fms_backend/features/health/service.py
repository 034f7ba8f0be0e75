"""
Health Service - database availability, crawl progress and watcher status.
"""
from __future__ import annotations

import sqlite3
from typing import Any

from fms_shared import ErrorCode, Result, get_logger

from ...adapters.db.sqlite import Sqlite
from ..index import IndexService

logger = get_logger(__name__)


class HealthService:
    def __init__(self, db: Sqlite, index: IndexService):
        self.db = db
        self.index = index

    async def status(self) -> Result[dict[str, Any]]:
        """
        Get overall system health.

        Returns:
            Result with database, crawl and watcher sections plus an overall verdict.
        """
        try:
            db_status = await self._check_database()
            crawl = self.index.crawl_state()
            watcher = self.index.watcher
            status = {
                "overall": self._determine_health(db_status, crawl.degraded),
                "database": db_status,
                "crawl": crawl.to_dict(),
                "watcher": {
                    "running": bool(watcher and watcher.is_running),
                    "directory": watcher.watched_directory if watcher else None,
                    "pending": watcher.get_pending_count() if watcher else 0,
                },
            }
            return Result.Ok(status)
        except (sqlite3.Error, RuntimeError) as exc:
            logger.error("Health check failed: %s", exc)
            return Result.Err(ErrorCode.DEGRADED, str(exc))

    async def _check_database(self) -> dict[str, Any]:
        result = await self.db.aquery(
            "SELECT COUNT(*) AS files, COALESCE(SUM(is_dir), 0) AS dirs FROM files WHERE deleted = 0"
        )
        if not result.ok or not result.data:
            return {"available": False, "files": 0, "directories": 0, "error": result.error}
        row = result.data[0]
        return {
            "available": True,
            "files": int(row["files"] or 0),
            "directories": int(row["dirs"] or 0),
            "error": None,
        }

    @staticmethod
    def _determine_health(db_status: dict[str, Any], degraded: bool) -> str:
        """healthy, degraded (store writes failing) or unhealthy (database unreachable)."""
        if not db_status.get("available"):
            return "unhealthy"
        if degraded:
            return "degraded"
        return "healthy"
