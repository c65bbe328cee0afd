"""SQLite backed message repository used by the dispatcher."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .models import (
    InvalidTransitionError,
    MessageNotFoundError,
    MessageRecord,
    MessageStatus,
)
from .sql import DbAdapter

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    destination TEXT NOT NULL,
    content TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    delivery_id TEXT,
    error TEXT,
    scheduled_at INTEGER NOT NULL,
    sent_at INTEGER,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_messages_due ON messages(status, scheduled_at);
"""

COLUMNS = (
    "id, destination, content, status, delivery_id, error, "
    "scheduled_at, sent_at, created_at, updated_at"
)


class MessageRepository:
    """Read and write message records through an injected :class:`DbAdapter`.

    Every write that changes ``status`` is guarded by ``status = 'pending'``:
    terminal records are never modified, and the return value tells the
    caller whether its transition won.
    """

    def __init__(self, db: DbAdapter):
        self.db = db

    async def init_db(self) -> None:
        """Create the schema if it does not exist yet."""
        await self.db.connect()
        await self.db.execute_script(SCHEMA)

    async def close(self) -> None:
        await self.db.close()

    # Creation and lookup -----------------------------------------------------
    async def create(self, destination: str, content: str, scheduled_at: int) -> int:
        """Insert a new pending message and return its id."""
        return await self.db.insert(
            """
            INSERT INTO messages (destination, content, status, scheduled_at)
            VALUES (:destination, :content, :status, :scheduled_at)
            """,
            {
                "destination": destination,
                "content": content,
                "status": MessageStatus.PENDING.value,
                "scheduled_at": int(scheduled_at),
            },
        )

    async def get(self, message_id: int) -> MessageRecord:
        """Fetch a single message or raise :class:`MessageNotFoundError`."""
        row = await self.db.fetch_one(
            f"SELECT {COLUMNS} FROM messages WHERE id = :id",
            {"id": message_id},
        )
        if row is None:
            raise MessageNotFoundError(message_id)
        return MessageRecord.from_row(row)

    async def find_pending(self, before: int, limit: int) -> List[MessageRecord]:
        """Return due pending messages, oldest ``scheduled_at`` first."""
        rows = await self.db.fetch_all(
            f"""
            SELECT {COLUMNS}
            FROM messages
            WHERE status = :status
              AND scheduled_at <= :before
            ORDER BY scheduled_at ASC, id ASC
            LIMIT :limit
            """,
            {"status": MessageStatus.PENDING.value, "before": int(before), "limit": int(limit)},
        )
        return [MessageRecord.from_row(row) for row in rows]

    async def find_by_status(self, status: MessageStatus | str) -> List[MessageRecord]:
        """Return every message currently in ``status``."""
        rows = await self.db.fetch_all(
            f"""
            SELECT {COLUMNS}
            FROM messages
            WHERE status = :status
            ORDER BY scheduled_at ASC, id ASC
            """,
            {"status": MessageStatus(status).value},
        )
        return [MessageRecord.from_row(row) for row in rows]

    async def list_messages(self) -> List[MessageRecord]:
        """Return all messages for inspection purposes."""
        rows = await self.db.fetch_all(
            f"SELECT {COLUMNS} FROM messages ORDER BY scheduled_at ASC, id ASC"
        )
        return [MessageRecord.from_row(row) for row in rows]

    async def count_pending(self) -> int:
        """Return the number of messages still awaiting delivery."""
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS total FROM messages WHERE status = :status",
            {"status": MessageStatus.PENDING.value},
        )
        return int(row["total"] if row else 0)

    # Status transitions ------------------------------------------------------
    async def update_status(self, message_id: int, status: MessageStatus | str) -> bool:
        """Move a pending message into a terminal status.

        Raises :class:`InvalidTransitionError` when asked to go back to
        ``pending``. Returns ``False`` when the message was no longer pending.
        """
        target = MessageStatus(status)
        if not target.is_terminal:
            raise InvalidTransitionError(f"cannot move a message back to '{target.value}'")
        rowcount = await self.db.execute(
            """
            UPDATE messages
            SET status = :status, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status = :pending
            """,
            {"status": target.value, "id": message_id, "pending": MessageStatus.PENDING.value},
        )
        return rowcount > 0

    async def update_delivery_id(self, message_id: int, delivery_id: str) -> bool:
        """Record the delivery identifier if none has been stored yet."""
        rowcount = await self.db.execute(
            """
            UPDATE messages
            SET delivery_id = :delivery_id, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND delivery_id IS NULL
            """,
            {"delivery_id": delivery_id, "id": message_id},
        )
        return rowcount > 0

    async def update_sent_at(self, message_id: int, sent_at: int) -> bool:
        """Record the delivery timestamp if none has been stored yet."""
        rowcount = await self.db.execute(
            """
            UPDATE messages
            SET sent_at = :sent_at, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND sent_at IS NULL
            """,
            {"sent_at": int(sent_at), "id": message_id},
        )
        return rowcount > 0

    async def mark_sent(self, message_id: int, delivery_id: str, sent_at: int) -> bool:
        """Apply the ``pending -> sent`` transition in a single statement."""
        rowcount = await self.db.execute(
            """
            UPDATE messages
            SET status = :status, delivery_id = :delivery_id, sent_at = :sent_at,
                error = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status = :pending
            """,
            {
                "status": MessageStatus.SENT.value,
                "delivery_id": delivery_id,
                "sent_at": int(sent_at),
                "id": message_id,
                "pending": MessageStatus.PENDING.value,
            },
        )
        return rowcount > 0

    async def mark_failed(self, message_id: int, error: str) -> bool:
        """Apply the ``pending -> failed`` transition, keeping the reason."""
        rowcount = await self.db.execute(
            """
            UPDATE messages
            SET status = :status, error = :error, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status = :pending
            """,
            {
                "status": MessageStatus.FAILED.value,
                "error": error,
                "id": message_id,
                "pending": MessageStatus.PENDING.value,
            },
        )
        return rowcount > 0

    # Edits ---------------------------------------------------------------------
    async def update_fields(
        self,
        message_id: int,
        *,
        destination: Optional[str] = None,
        content: Optional[str] = None,
        scheduled_at: Optional[int] = None,
    ) -> bool:
        """Edit a pending message. Returns ``False`` when it is no longer pending."""
        changes: Dict[str, Any] = {}
        if destination is not None:
            changes["destination"] = destination
        if content is not None:
            changes["content"] = content
        if scheduled_at is not None:
            changes["scheduled_at"] = int(scheduled_at)
        if not changes:
            return False
        assignments = ", ".join(f"{column} = :{column}" for column in changes)
        rowcount = await self.db.execute(
            f"""
            UPDATE messages
            SET {assignments}, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status = :pending
            """,
            {**changes, "id": message_id, "pending": MessageStatus.PENDING.value},
        )
        return rowcount > 0
