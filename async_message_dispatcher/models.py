"""Message record, status values and error types shared by the dispatcher."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

MAX_CONTENT_LENGTH = 500


class MessageStatus(str, Enum):
    """Lifecycle states of a scheduled message."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.PENDING


class DispatcherError(RuntimeError):
    """Base class for errors raised by the dispatcher and its collaborators."""

    code = "dispatcher_error"

    def __init__(self, message: str = "Dispatcher error"):
        super().__init__(message)


class MessageValidationError(DispatcherError):
    """Raised when a message payload is rejected before it is stored."""

    code = "invalid_message"


class ContentTooLongError(MessageValidationError):
    """Raised when the message body exceeds :data:`MAX_CONTENT_LENGTH`."""

    code = "content_too_long"

    def __init__(self, length: int, limit: int = MAX_CONTENT_LENGTH):
        super().__init__(f"Message content exceeds maximum length ({length} > {limit})")
        self.length = length
        self.limit = limit


class MessageNotFoundError(DispatcherError):
    """Raised when a message id does not exist in storage."""

    code = "message_not_found"

    def __init__(self, message_id: int):
        super().__init__(f"Message '{message_id}' not found")
        self.message_id = message_id


class InvalidTransitionError(DispatcherError):
    """Raised when a status change would leave a terminal state."""

    code = "invalid_transition"


class DeliveryError(DispatcherError):
    """Raised by the delivery channel when a message could not be handed over."""

    code = "delivery_failed"

    def __init__(self, message: str = "Delivery failed", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CacheError(DispatcherError):
    """Raised when the delivery metadata cache cannot be reached."""

    code = "cache_unavailable"


@dataclass
class DeliveryResult:
    """Successful response of the delivery channel."""

    delivery_id: str
    message: str = ""


@dataclass
class MessageRecord:
    """A message tracked by the dispatcher, as stored in the ``messages`` table."""

    id: int
    destination: str
    content: str
    scheduled_at: int
    status: MessageStatus = MessageStatus.PENDING
    delivery_id: Optional[str] = None
    sent_at: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MessageRecord":
        """Build a record from a database row mapping."""
        return cls(
            id=int(row["id"]),
            destination=row["destination"],
            content=row["content"],
            scheduled_at=int(row["scheduled_at"]),
            status=MessageStatus(row["status"]),
            delivery_id=row.get("delivery_id"),
            sent_at=row.get("sent_at"),
            error=row.get("error"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_pending(self) -> bool:
        return self.status is MessageStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def validate_message(destination: Optional[str], content: Optional[str]) -> None:
    """Reject payloads that must never reach the repository."""
    if destination is None or not str(destination).strip():
        raise MessageValidationError("missing destination")
    if content is None or content == "":
        raise MessageValidationError("missing content")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ContentTooLongError(len(content))


def to_epoch(value: Any) -> int:
    """Coerce datetimes (naive values are taken as UTC) and numbers to epoch seconds.

    Fractions round up: a record must never become due before its time.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return math.ceil(value.timestamp())
    if isinstance(value, (int, float)):
        return math.ceil(value)
    raise MessageValidationError(f"invalid timestamp: {value!r}")


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)
