"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from .base import DbAdapter


class SqliteAdapter(DbAdapter):
    """SQLite async adapter.

    File databases open a connection per operation. An in-memory database
    only lives as long as its connection, so ``:memory:`` keeps a single
    connection open between :meth:`connect` and :meth:`close`.
    """

    def __init__(self, db_path: str):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path or ":memory:"
        self._shared: aiosqlite.Connection | None = None

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    async def connect(self) -> None:
        """Open the shared connection for in-memory databases."""
        if self.is_memory and self._shared is None:
            self._shared = await aiosqlite.connect(self.db_path)

    async def close(self) -> None:
        if self._shared is not None:
            await self._shared.close()
            self._shared = None

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        if self.is_memory:
            await self.connect()
            yield self._shared
            return
        async with aiosqlite.connect(self.db_path) as db:
            yield db

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connection() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def insert(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute an INSERT, return ``lastrowid``."""
        async with self._connection() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return int(cursor.lastrowid)

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._connection() as db:
            await db.executescript(script)
            await db.commit()
