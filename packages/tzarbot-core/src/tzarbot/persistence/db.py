"""Async SQLite connection manager for the generation archive."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from tzarbot.errors import ArchiveError
from tzarbot.persistence.migrations import run_migrations
from tzarbot.persistence.repo import ensure_gitignore, get_archive_path

log = structlog.get_logger(__name__)

_PRAGMA_WAL = "PRAGMA journal_mode = WAL"
_PRAGMA_FK = "PRAGMA foreign_keys = ON"


class DatabaseManager:
    """An aiosqlite connection with WAL mode and foreign keys enabled.

    Usage::

        db = DatabaseManager(".tzarbot/archive.db")
        await db.initialize()
        rows = await db.execute("SELECT * FROM runs")
        await db.close()
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else get_archive_path()
        self._conn: aiosqlite.Connection | None = None
        log.debug("db_manager_created", path=str(self._db_path))

    @property
    def path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the connection, enable pragmas, and run migrations."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        ensure_gitignore(self._db_path.parent)

        try:
            self._conn = await aiosqlite.connect(self._db_path)
            self._conn.row_factory = aiosqlite.Row

            await self._conn.execute(_PRAGMA_WAL)
            await self._conn.execute(_PRAGMA_FK)
            await self._conn.commit()

            await run_migrations(self)
        except aiosqlite.Error as exc:
            await self.close()
            raise ArchiveError(f"cannot open archive {self._db_path}: {exc}") from exc
        log.info("db_initialized", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            log.debug("db_closed", path=str(self._db_path))

    async def __aenter__(self) -> DatabaseManager:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Execute a SELECT statement and return rows as plain dicts."""
        conn = self._require_connection()
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def execute_write(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an INSERT / UPDATE / DELETE / DDL statement.

        Returns the number of rows affected (0 for DDL).
        """
        conn = self._require_connection()
        async with conn.execute(sql, params) as cursor:
            await conn.commit()
            return cursor.rowcount if cursor.rowcount >= 0 else 0

    async def execute_many(self, sql: str, rows: list[tuple[Any, ...]]) -> None:
        """Execute one statement for every parameter tuple in a single transaction."""
        conn = self._require_connection()
        await conn.executemany(sql, rows)
        await conn.commit()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise ArchiveError("DatabaseManager is not initialized. Call await db.initialize() first.")
        return self._conn
