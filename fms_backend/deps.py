"""
Service wiring: open the scratch index, prepare its schema, construct services.

Plain functions and a dict; handlers look services up by name.
"""
from __future__ import annotations

import asyncio
import os
import shutil
import sqlite3
import tempfile
from typing import Any, Optional

from fms_shared import ErrorCode, Result, get_logger, log_success

from .adapters.db.schema import init_schema
from .adapters.db.sqlite import Sqlite
from .config import DB_MAX_CONNECTIONS, DB_TIMEOUT, INDEX_TMP_PARENT, WATCHER_ENABLED
from .features.health import HealthService
from .features.index import IndexService
from .features.launcher import LauncherService

logger = get_logger(__name__)

INDEX_DB_NAME = "index.db"


def _create_index_dir() -> str:
    parent = INDEX_TMP_PARENT
    if parent:
        os.makedirs(parent, exist_ok=True)
    return tempfile.mkdtemp(prefix="fms-index-", dir=parent)


def _init_db_or_error(db_path: str, *, scratch: bool) -> Result[Sqlite]:
    logger.info("Initializing database: %s", db_path)
    try:
        return Result.Ok(
            Sqlite(db_path, max_connections=DB_MAX_CONNECTIONS, timeout=DB_TIMEOUT, remove_on_close=scratch)
        )
    except (OSError, sqlite3.Error, RuntimeError) as exc:
        logger.error("Failed to initialize database: %s", exc)
        return Result.Err(ErrorCode.DB_ERROR, f"Failed to initialize database: {exc}")


async def _init_schema_or_error(db: Sqlite) -> Result[bool]:
    schema_result = await asyncio.to_thread(init_schema, db)
    if not schema_result.ok:
        logger.error("Schema initialization failed: %s", schema_result.error)
        return Result.Err(
            schema_result.code or ErrorCode.DB_ERROR,
            f"Failed to initialize database: {schema_result.error}",
        )
    return Result.Ok(True)


async def build_services(db_path: Optional[str] = None, **index_options: Any) -> Result[dict]:
    """
    Open the index store and construct every service around it.

    The index lives in a fresh scratch directory that is removed again when the
    database is closed. `db_path` places it somewhere explicit instead (tests).

    Args:
        db_path: Path to the SQLite database (default: new scratch directory)
        index_options: Forwarded to IndexService (walker, batch_size, ...)

    Returns:
        Result holding the services dict (keys: db, index, launcher, health, index_dir)
    """
    logger.info("Starting services")
    scratch = db_path is None
    index_dir: Optional[str] = None
    if scratch:
        try:
            index_dir = _create_index_dir()
        except OSError as exc:
            logger.error("Failed to create index directory: %s", exc)
            return Result.Err(ErrorCode.DB_ERROR, f"Failed to create index directory: {exc}")
        db_path = os.path.join(index_dir, INDEX_DB_NAME)
    else:
        index_dir = os.path.dirname(os.path.abspath(str(db_path)))

    db_res = _init_db_or_error(str(db_path), scratch=scratch)
    if not db_res.ok or db_res.data is None:
        if scratch and index_dir:
            shutil.rmtree(index_dir, ignore_errors=True)
        return Result.Err(db_res.code or ErrorCode.DB_ERROR, db_res.error or "Failed to initialize database")
    db = db_res.data

    schema_res = await _init_schema_or_error(db)
    if not schema_res.ok:
        await db.aclose()
        return schema_res  # type: ignore[return-value]

    index_service = IndexService(db, **index_options)
    services = {
        "db": db,
        "index": index_service,
        "launcher": LauncherService(),
        "health": HealthService(db, index_service),
        "index_dir": index_dir,
    }
    log_success(logger, "Services ready")
    return Result.Ok(services)


async def start_indexing(services: dict, root: str, *, watch: bool = WATCHER_ENABLED) -> None:
    """Kick off the background crawl of `root` and, when enabled, the change watcher."""
    index_service: IndexService = services["index"]
    index_service.start_crawl(root)
    if not watch:
        return
    ignored = tuple(p for p in (services.get("index_dir"),) if p)
    if await index_service.start_watcher(root, ignored_paths=ignored):
        log_success(logger, "File watcher enabled")
    else:
        logger.warning("File watcher disabled: could not watch %s", root)


async def dispose_services(services: Optional[dict]) -> None:
    """Stop the index service, then close the store; a failure in one step is logged and the next still runs."""
    if not services:
        return
    index_service = services.get("index")
    if index_service is not None:
        try:
            await index_service.close()
        except (RuntimeError, OSError) as exc:
            logger.warning("Error stopping index service: %s", exc)
    db = services.get("db")
    if db is not None:
        try:
            await db.aclose()
        except (RuntimeError, OSError, sqlite3.Error) as exc:
            logger.warning("Error closing database: %s", exc)
