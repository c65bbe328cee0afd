"""Minimal async SQL layer with adapter pattern.

Usage:
    adapter = create_adapter("/data/messages.db")  # SQLite (path)
    adapter = create_adapter("sqlite::memory:")     # in-memory SQLite

    await adapter.connect()
    rows = await adapter.fetch_all(
        "SELECT * FROM messages WHERE status = :status",
        {"status": "pending"}
    )
    await adapter.close()
"""

from .base import DbAdapter
from .sqlite import SqliteAdapter

__all__ = [
    "DbAdapter",
    "SqliteAdapter",
    "create_adapter",
]


def create_adapter(connection_string: str) -> DbAdapter:
    """Create database adapter from connection string.

    Connection string formats:
        - "sqlite:/path/to/db.sqlite" or just a filesystem path
        - "sqlite::memory:" or ":memory:" for in-memory SQLite

    Raises:
        ValueError: If connection string format is invalid.
    """
    if not connection_string:
        raise ValueError("Empty connection string")

    if connection_string == ":memory:" or (
        "://" not in connection_string and not connection_string.startswith("sqlite:")
    ):
        return SqliteAdapter(connection_string)

    db_type, connection_info = connection_string.split(":", 1)
    if db_type.lower() == "sqlite":
        return SqliteAdapter(connection_info)

    raise ValueError(
        f"Unknown database type: '{db_type}'. "
        "Supported: sqlite"
    )
