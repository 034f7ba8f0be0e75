"""
SQLite adapter for the index store.

- Connections are aiosqlite connections driven from one private event-loop thread
  (`_DbLoop`), so the store can be used from the aiohttp loop, the crawl coordinator
  or a plain worker thread alike.
- Plain methods block on that loop; `a*` methods await it.
- Writers are serialized by one asyncio lock on the DB loop. Readers take pooled
  connections and, in WAL mode, see the last committed batch without waiting.

Nothing here raises to callers: statements return `Result`. The exception is
`atransaction`, which raises on begin/commit failure so that a rolled-back batch can
never be mistaken for a committed one.
"""

from __future__ import annotations

import asyncio
import contextvars
import os
import random
import shutil
import sqlite3
import threading
import uuid
from collections.abc import Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, TypeVar

import aiosqlite

from fms_shared import ErrorCode, Result, get_logger

from ...config import DB_MAX_CONNECTIONS

logger = get_logger(__name__)

T = TypeVar("T")

SQLITE_BUSY_TIMEOUT_MS = 5000
# Negative cache_size is in KiB: about 64 MiB per connection.
SQLITE_CACHE_SIZE_KIB = -64000

LOCK_RETRY_ATTEMPTS = 6
LOCK_RETRY_BASE_SECONDS = 0.05
LOCK_RETRY_MAX_SECONDS = 0.75

_READ_VERBS = frozenset({"SELECT", "PRAGMA", "WITH", "EXPLAIN"})
_TX_MODES = frozenset({"DEFERRED", "IMMEDIATE", "EXCLUSIVE"})

# Token of the transaction the current task is inside, if any.
_TX_TOKEN: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("fms_db_tx_token", default=None)


def _is_write(sql: str) -> bool:
    words = str(sql or "").split(None, 1)
    return bool(words) and words[0].upper() not in _READ_VERBS


def _is_insert(sql: str) -> bool:
    return str(sql or "").lstrip()[:6].upper() == "INSERT"


def _is_lock_contention(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _error_result(exc: Exception, action: str) -> Result[Any]:
    if isinstance(exc, sqlite3.IntegrityError):
        logger.warning("%s: integrity error: %s", action, exc)
        return Result.Err(ErrorCode.DB_ERROR, f"Integrity error: {exc}")
    if isinstance(exc, sqlite3.OperationalError) and "interrupted" in str(exc).lower():
        return Result.Err(ErrorCode.TIMEOUT, "Database operation interrupted")
    logger.error("%s failed: %s", action, exc)
    return Result.Err(ErrorCode.DB_ERROR, str(exc))


class _DbLoop:
    """An event loop on a daemon thread. Every aiosqlite call is made from here."""

    def __init__(self, name: str = "fms-db-loop"):
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()
        self._guard = threading.Lock()

    def _ensure(self) -> asyncio.AbstractEventLoop:
        with self._guard:
            if self._loop is not None and self._thread is not None and self._thread.is_alive():
                return self._loop
            self._started.clear()
            self._thread = threading.Thread(target=self._main, name=self._name, daemon=True)
            self._thread.start()
        if not self._started.wait(timeout=10.0) or self._loop is None:
            raise RuntimeError("Database loop thread did not start")
        return self._loop

    def _main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._started.set()
        try:
            loop.run_forever()
        finally:
            leftovers = asyncio.all_tasks(loop)
            for task in leftovers:
                task.cancel()
            if leftovers:
                loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
            loop.close()

    def submit(self, coro: Awaitable[T]):
        return asyncio.run_coroutine_threadsafe(coro, self._ensure())

    def call(self, coro: Awaitable[T]) -> T:
        """Run `coro` on the DB loop and block for its result."""
        return self.submit(coro).result()

    async def acall(self, coro: Awaitable[T]) -> T:
        """Run `coro` on the DB loop and await its result from another loop."""
        return await asyncio.wrap_future(self.submit(coro))

    def stop(self) -> None:
        loop, thread = self._loop, self._thread
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)


class Sqlite:
    """
    Pooled SQLite access for the index.

    Args:
        db_path: Database file path. Its directory is created if needed.
        max_connections: Pool size, readers and the writer together.
        timeout: sqlite3 connect timeout in seconds.
        remove_on_close: Delete the database files and their directory on close
            (the per-process index lives in a scratch directory).
    """

    def __init__(
        self,
        db_path: str,
        max_connections: Optional[int] = None,
        timeout: float = 30.0,
        *,
        remove_on_close: bool = False,
    ):
        self.db_path = Path(db_path)
        size = max_connections if max_connections is not None else DB_MAX_CONNECTIONS
        self._max_connections = max(1, int(size or 8))
        self._timeout = float(timeout)
        self._remove_on_close = bool(remove_on_close)
        self._closed = False

        self._db_loop = _DbLoop()
        # The members below belong to the DB loop and are only touched from it.
        self._idle: list[aiosqlite.Connection] = []
        self._slots: Optional[asyncio.Semaphore] = None
        self._write_lock: Optional[asyncio.Lock] = None
        self._tx_conns: dict[str, aiosqlite.Connection] = {}

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db_loop.call(self._startup())
        except (sqlite3.Error, OSError) as exc:
            logger.error("Cannot open database %s: %s", self.db_path, exc)
            self._db_loop.stop()
            raise

    # ==================== Connections (DB loop) ====================

    async def _startup(self) -> None:
        if self._slots is not None:
            return
        self._slots = asyncio.Semaphore(self._max_connections)
        self._write_lock = asyncio.Lock()
        # Open one connection now so a bad path or a missing WAL fails here, not on first use.
        conn = await self._checkout()
        await self._checkin(conn)
        logger.info("Database ready: %s", self.db_path)

    async def _connect(self) -> aiosqlite.Connection:
        # Autocommit; multi-statement atomicity only through atransaction().
        conn = await aiosqlite.connect(str(self.db_path), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        for pragma in (
            "PRAGMA journal_mode=WAL",
            "PRAGMA synchronous=NORMAL",
            f"PRAGMA cache_size={SQLITE_CACHE_SIZE_KIB}",
            "PRAGMA temp_store=MEMORY",
            f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}",
            "PRAGMA foreign_keys=ON",
        ):
            await conn.execute(pragma)
        return conn

    async def _checkout(self) -> aiosqlite.Connection:
        assert self._slots is not None
        await self._slots.acquire()
        try:
            return self._idle.pop() if self._idle else await self._connect()
        except BaseException:
            self._slots.release()
            raise

    async def _checkin(self, conn: aiosqlite.Connection) -> None:
        try:
            if self._closed:
                await conn.close()
            else:
                self._idle.append(conn)
        finally:
            if self._slots is not None:
                self._slots.release()

    async def _retry_locked(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run `op`, backing off while another process holds the database lock."""
        for attempt in range(LOCK_RETRY_ATTEMPTS):
            try:
                return await op()
            except sqlite3.OperationalError as exc:
                if not _is_lock_contention(exc) or attempt == LOCK_RETRY_ATTEMPTS - 1:
                    raise
                delay = min(LOCK_RETRY_MAX_SECONDS, LOCK_RETRY_BASE_SECONDS * (2 ** attempt))
                await asyncio.sleep(delay + random.random() * 0.03)
        raise sqlite3.OperationalError("database is locked")

    # ==================== Statements (DB loop) ====================

    @staticmethod
    async def _apply(conn: aiosqlite.Connection, sql: str, params: Any, mode: str) -> Result[Any]:
        if mode == "many":
            cursor = await conn.executemany(sql, params)
        else:
            cursor = await conn.execute(sql, params or ())
        try:
            if mode == "fetch":
                return Result.Ok([dict(row) for row in await cursor.fetchall()])
            if mode == "one" and _is_insert(sql) and cursor.lastrowid:
                return Result.Ok(cursor.lastrowid)
            return Result.Ok(max(int(cursor.rowcount or 0), 0))
        finally:
            await cursor.close()

    async def _pooled(self, sql: str, params: Any, mode: str) -> Result[Any]:
        conn = await self._checkout()
        try:
            return await self._retry_locked(lambda: self._apply(conn, sql, params, mode))
        finally:
            await self._checkin(conn)

    async def _statement(self, sql: str, params: Any, mode: str, tx_token: Optional[str]) -> Result[Any]:
        """
        Run one statement. Inside a transaction it uses the transaction's connection
        (which already holds the write lock); otherwise a pooled one, taking the write
        lock first for writes.
        """
        try:
            await self._startup()
            if tx_token:
                tx_conn = self._tx_conns.get(tx_token)
                if tx_conn is None:
                    return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
                return await self._retry_locked(lambda: self._apply(tx_conn, sql, params, mode))

            if _is_write(sql):
                assert self._write_lock is not None
                async with self._write_lock:
                    return await self._pooled(sql, params, mode)
            return await self._pooled(sql, params, mode)
        except (sqlite3.Error, ValueError) as exc:
            return _error_result(exc, "Statement")

    async def _script(self, script: str) -> Result[bool]:
        try:
            await self._startup()
            assert self._write_lock is not None
            # Write lock before a pool slot, the same order as _begin.
            async with self._write_lock:
                conn = await self._checkout()
                try:
                    await self._retry_locked(lambda: conn.executescript(script))
                finally:
                    await self._checkin(conn)
            return Result.Ok(True)
        except sqlite3.Error as exc:
            return _error_result(exc, "Script")

    # ==================== Public statement API ====================

    def _blocking(self, coro: Awaitable[Result[T]]) -> Result[T]:
        try:
            return self._db_loop.call(coro)
        except RuntimeError as exc:
            return Result.Err(ErrorCode.DB_ERROR, str(exc))

    def execute(self, query: str, params: Optional[tuple] = None, fetch: bool = False) -> Result[Any]:
        """Run one statement (blocking). Writes return the rowcount, or the new rowid for an INSERT."""
        return self._blocking(self._statement(query, params, "fetch" if fetch else "one", None))

    def query(self, sql: str, params: Optional[tuple] = None) -> Result[list[dict[str, Any]]]:
        return self.execute(sql, params, fetch=True)

    def executescript(self, script: str) -> Result[bool]:
        """Run a multi-statement script under the write lock (blocking)."""
        return self._blocking(self._script(script))

    async def aexecute(self, query: str, params: Optional[tuple] = None, fetch: bool = False) -> Result[Any]:
        mode = "fetch" if fetch else "one"
        return await self._db_loop.acall(self._statement(query, params, mode, _TX_TOKEN.get()))

    async def aquery(self, sql: str, params: Optional[tuple] = None) -> Result[list[dict[str, Any]]]:
        return await self.aexecute(sql, params, fetch=True)

    async def aexecutemany(self, query: str, params_list: Sequence[tuple]) -> Result[int]:
        """Run one statement over many parameter tuples; returns the total rowcount."""
        return await self._db_loop.acall(self._statement(query, list(params_list), "many", _TX_TOKEN.get()))

    async def aexecutescript(self, script: str) -> Result[bool]:
        return await self._db_loop.acall(self._script(script))

    # ==================== Metadata helpers ====================

    def has_table(self, table_name: str) -> bool:
        result = self.query(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
            (table_name,),
        )
        return bool(result.ok and result.data)

    def get_schema_version(self) -> int:
        """Schema version stored in `metadata` (0 when absent or unreadable)."""
        if not self.has_table("metadata"):
            return 0
        result = self.query("SELECT value FROM metadata WHERE key = 'schema_version'")
        if not result.ok or not result.data:
            return 0
        try:
            return int(result.data[0]["value"])
        except (TypeError, ValueError):
            logger.warning("Invalid schema_version value in database")
            return 0

    def set_schema_version(self, version: int) -> Result[bool]:
        return self.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema_version', ?)",
            (str(version),),
        )

    # ==================== Transactions ====================

    async def _begin(self, mode: str) -> Result[str]:
        await self._startup()
        verb = str(mode or "").upper()
        begin = f"BEGIN {verb if verb in _TX_MODES else 'IMMEDIATE'}"
        assert self._write_lock is not None
        await self._write_lock.acquire()
        try:
            conn = await self._checkout()
        except (sqlite3.Error, ValueError) as exc:
            self._write_lock.release()
            return _error_result(exc, "Begin transaction")
        try:
            await self._retry_locked(lambda: conn.execute(begin))
        except sqlite3.Error as exc:
            await self._checkin(conn)
            self._write_lock.release()
            return _error_result(exc, "Begin transaction")
        token = uuid.uuid4().hex
        self._tx_conns[token] = conn
        return Result.Ok(token)

    async def _finish(self, token: str, *, commit: bool) -> Result[bool]:
        conn = self._tx_conns.pop(token, None)
        if conn is None:
            return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
        try:
            if commit:
                await self._retry_locked(conn.commit)
            else:
                await conn.rollback()
            return Result.Ok(True)
        except sqlite3.Error as exc:
            # The connection goes back to the pool, so it must not keep an open transaction.
            try:
                await conn.rollback()
            except sqlite3.Error:
                logger.debug("Rollback after failed commit also failed", exc_info=True)
            return _error_result(exc, "Commit" if commit else "Rollback")
        finally:
            await self._checkin(conn)
            assert self._write_lock is not None
            self._write_lock.release()

    @asynccontextmanager
    async def atransaction(self, mode: str = "immediate"):
        """
        Group statements into one atomic write. Statements issued by the same task
        inside the block run on the transaction's connection; any exception rolls back.

        Raises:
            RuntimeError: when the transaction cannot begin or commit
        """
        begun = await self._db_loop.acall(self._begin(mode))
        if not begun.ok or not begun.data:
            raise RuntimeError(begun.error or "Failed to begin transaction")
        token = begun.data
        handle = _TX_TOKEN.set(token)
        try:
            yield
        except BaseException:
            await self._db_loop.acall(self._finish(token, commit=False))
            raise
        else:
            committed = await self._db_loop.acall(self._finish(token, commit=True))
            if not committed.ok:
                raise RuntimeError(committed.error or "Commit failed")
        finally:
            _TX_TOKEN.reset(handle)

    # ==================== Shutdown ====================

    async def _shutdown(self) -> None:
        self._closed = True
        conns = list(self._tx_conns.values()) + self._idle
        self._tx_conns.clear()
        self._idle = []
        for conn in conns:
            try:
                await conn.close()
            except (sqlite3.Error, ValueError) as exc:
                logger.debug("Closing connection failed: %s", exc)

    def _remove_files(self) -> None:
        if not self._remove_on_close:
            return
        for suffix in ("", "-wal", "-shm", "-journal"):
            try:
                os.remove(f"{self.db_path}{suffix}")
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.debug("Could not remove %s%s: %s", self.db_path, suffix, exc)
        shutil.rmtree(self.db_path.parent, ignore_errors=True)

    def close(self) -> None:
        """Close every connection, stop the DB loop and drop a scratch database (blocking)."""
        try:
            self._db_loop.call(self._shutdown())
        except RuntimeError as exc:
            logger.debug("Database close failed: %s", exc)
        finally:
            self._db_loop.stop()
            self._remove_files()

    async def aclose(self) -> None:
        try:
            await self._db_loop.acall(self._shutdown())
        finally:
            await asyncio.to_thread(self._db_loop.stop)
            self._remove_files()
