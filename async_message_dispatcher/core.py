"""Core orchestration logic for the scheduled message dispatcher.

This module provides the :class:`MessageDispatcher` class, which owns the
background dispatch loop and the operations used to manage scheduled
messages:

- A single asyncio task selects a bounded batch of due messages, oldest
  first, and hands each one to the delivery channel
- Every outcome is persisted as one guarded status transition
- Delivery identifiers are recorded in a best-effort metadata cache
- ``start()`` and ``stop()`` are idempotent and never block on an idle loop

Example:
    Running the dispatcher::

        from async_message_dispatcher.core import MessageDispatcher
        from async_message_dispatcher.delivery import WebhookClient
        from async_message_dispatcher.persistence import MessageRepository
        from async_message_dispatcher.sql import create_adapter

        dispatcher = MessageDispatcher(
            repository=MessageRepository(create_adapter("/data/messages.db")),
            channel=WebhookClient("https://hooks.example.com/send"),
        )
        await dispatcher.init()
        await dispatcher.start()
        # Due messages are now delivered every two minutes

        await dispatcher.stop()

Attributes:
    DEFAULT_INTERVAL_SECONDS: Pause between two dispatch cycles.
    DEFAULT_BATCH_SIZE: Maximum number of messages handled per cycle.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .cache import MetadataCache
from .delivery import DeliveryChannel
from .logger import get_logger
from .models import (
    DeliveryError,
    InvalidTransitionError,
    MessageRecord,
    MessageStatus,
    to_epoch,
    validate_message,
)
from .persistence import MessageRepository
from .prometheus import DispatchMetrics

DEFAULT_INTERVAL_SECONDS = 120.0
DEFAULT_BATCH_SIZE = 2

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_PERSIST_ERROR = "persist_error"


@dataclass
class CycleReport:
    """Summary of one dispatch cycle."""

    selected: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    persist_errors: int = 0
    errors: int = 0
    aborted: bool = False

    def count(self, outcome: str) -> None:
        if outcome == OUTCOME_SENT:
            self.sent += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        elif outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        elif outcome == OUTCOME_PERSIST_ERROR:
            self.persist_errors += 1


class MessageDispatcher:
    """Deliver due messages periodically and manage the scheduled queue.

    Only one dispatch task exists at a time, so cycles never overlap. The
    in-memory status check at the top of :meth:`_dispatch_message` relies
    on that: two concurrent loops would need a real claim on each row.
    """

    def __init__(
        self,
        *,
        repository: MessageRepository,
        channel: DeliveryChannel,
        cache: Optional[MetadataCache] = None,
        logger=None,
        metrics: DispatchMetrics | None = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        log_delivery_activity: bool = False,
    ):
        """Store the collaborators and prepare the lifecycle state."""
        self.repository = repository
        self.channel = channel
        self.cache = cache
        self.logger = logger or get_logger()
        self.metrics = metrics or DispatchMetrics()
        self._interval = max(0.0, float(interval_seconds))
        self._batch_size = max(1, int(batch_size))
        self._log_delivery_activity = bool(log_delivery_activity)

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._initialised = False

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def init(self) -> None:
        """Create the storage schema and publish the pending gauge."""
        await self.repository.init_db()
        self._initialised = True
        await self._refresh_pending_gauge()

    async def close(self) -> None:
        """Stop the loop and release storage and cache resources."""
        await self.stop()
        await self.repository.close()
        if self.cache is not None:
            await self.cache.close()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> bool:
        """Spawn the dispatch loop unless one is already running.

        Returns ``True`` when a new loop was started. The first cycle runs
        right away inside the new task; this call does not wait for it.
        """
        async with self._lifecycle_lock:
            if self.is_running:
                if not self._stop.is_set():
                    self.logger.debug("Dispatch loop already running, start ignored")
                    return False
                # A previous stop() did not wait: let that cycle finish first.
                await asyncio.gather(self._task, return_exceptions=True)
            if not self._initialised:
                await self.init()
            self._stop.clear()
            self._wake_event.clear()
            self._task = asyncio.create_task(self._dispatch_loop(), name="message-dispatch-loop")
            self.metrics.set_running(True)
            self.logger.info(
                "Message dispatcher started (interval=%ss, batch_size=%d)",
                self._interval,
                self._batch_size,
            )
            return True

    async def stop(self, wait: bool = True) -> bool:
        """Ask the loop to exit once its current cycle is complete.

        In-flight deliveries are never cancelled. Returns ``False``
        immediately when no loop is running.
        """
        task = self._task
        if task is None or task.done():
            self.logger.debug("Dispatch loop not running, stop ignored")
            return False
        self._stop.set()
        self._wake_event.set()
        if wait:
            await asyncio.gather(task, return_exceptions=True)
        return True

    def run_now(self) -> bool:
        """Wake the loop for an immediate cycle. Returns ``False`` when idle."""
        if not self.is_running:
            return False
        self._wake_event.set()
        return True

    # -------------------------------------------------------------- dispatching
    async def _dispatch_loop(self) -> None:
        """Run a cycle immediately, then once per interval until stopped."""
        self.logger.debug("Dispatch loop started")
        try:
            while not self._stop.is_set():
                try:
                    report = await self.run_cycle()
                    self.logger.debug("Dispatch cycle finished: %s", report)
                except Exception as exc:  # pragma: no cover - run_cycle contains its own errors
                    self.logger.exception("Unhandled error in dispatch loop: %s", exc)
                await self._wait_for_wakeup(self._interval)
        finally:
            self.metrics.set_running(False)
            self.logger.info("Message dispatcher stopped")

    async def run_cycle(self) -> CycleReport:
        """Select one batch of due messages and attempt each delivery."""
        report = CycleReport()
        now_ts = self._utc_now_epoch()
        try:
            batch = await self.repository.find_pending(before=now_ts, limit=self._batch_size)
        except Exception as exc:
            self.logger.exception("Failed to fetch pending messages: %s", exc)
            self.metrics.inc_cycle_error()
            report.aborted = True
            return report

        report.selected = len(batch)
        if batch:
            self.logger.debug("Fetched %d due message(s) (now_ts=%d)", len(batch), now_ts)
        for record in batch:
            try:
                outcome = await self._dispatch_message(record)
            except Exception as exc:
                self.logger.exception("Failed to process message %s: %s", record.id, exc)
                report.errors += 1
                continue
            report.count(outcome)

        self.metrics.inc_cycle()
        await self._refresh_pending_gauge()
        return report

    async def _dispatch_message(self, record: MessageRecord) -> str:
        """Deliver one record and persist the resulting transition."""
        if not record.is_pending:
            self.logger.debug("Skipping message %s (status=%s)", record.id, record.status.value)
            return OUTCOME_SKIPPED

        if self._log_delivery_activity:
            self.logger.info("Attempting delivery for message %s to %s", record.id, record.destination)

        try:
            result = await self.channel.send(record.destination, record.content)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            if isinstance(exc, DeliveryError):
                self.logger.warning("Delivery failed for message %s: %s", record.id, reason)
            else:
                self.logger.exception("Delivery channel raised for message %s", record.id)
            record.status = MessageStatus.FAILED
            record.error = reason
            self.metrics.inc_failed()
            if not await self.repository.mark_failed(record.id, reason):
                self.logger.warning("Message %s was no longer pending, failure not recorded", record.id)
            return OUTCOME_FAILED

        sent_at = self._utc_now_epoch()
        record.status = MessageStatus.SENT
        record.delivery_id = result.delivery_id
        record.sent_at = sent_at
        try:
            stored = await self.repository.mark_sent(record.id, result.delivery_id, sent_at)
        except Exception as exc:
            self.metrics.inc_persist_error()
            self.logger.error(
                "Message %s was delivered (delivery_id=%s) but its status could not be stored: %s",
                record.id,
                result.delivery_id,
                exc,
            )
            await self._cache_delivery(result.delivery_id, sent_at)
            return OUTCOME_PERSIST_ERROR

        if not stored:
            self.logger.warning(
                "Message %s was delivered (delivery_id=%s) after leaving the pending state",
                record.id,
                result.delivery_id,
            )
        self.metrics.inc_sent()
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for message %s (delivery_id=%s)", record.id, result.delivery_id)
        await self._cache_delivery(result.delivery_id, sent_at)
        return OUTCOME_SENT

    async def _cache_delivery(self, delivery_id: str, sent_at: int) -> None:
        """Record the delivery time for ``delivery_id``; failures are only logged."""
        if self.cache is None:
            return
        try:
            await self.cache.put(delivery_id, sent_at)
        except Exception as exc:
            self.metrics.inc_cache_error()
            self.logger.warning("Failed to cache delivery id %s: %s", delivery_id, exc)

    async def _refresh_pending_gauge(self) -> None:
        """Refresh the metric describing pending messages."""
        try:
            count = await self.repository.count_pending()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(count)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via run-now or stop."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------------ messages
    async def create_message(self, destination: str, content: str, scheduled_at: Any) -> MessageRecord:
        """Validate and store a new pending message."""
        validate_message(destination, content)
        scheduled_ts = to_epoch(scheduled_at)
        message_id = await self.repository.create(destination.strip(), content, scheduled_ts)
        self.logger.debug("Scheduled message %s for %s at %d", message_id, destination, scheduled_ts)
        await self._refresh_pending_gauge()
        return await self.repository.get(message_id)

    async def get_message(self, message_id: int) -> MessageRecord:
        return await self.repository.get(message_id)

    async def list_messages(self, status: MessageStatus | str | None = None) -> List[MessageRecord]:
        if status is None:
            return await self.repository.list_messages()
        return await self.repository.find_by_status(status)

    async def list_sent(self) -> List[MessageRecord]:
        return await self.repository.find_by_status(MessageStatus.SENT)

    async def update_message(
        self,
        message_id: int,
        *,
        destination: Optional[str] = None,
        content: Optional[str] = None,
        scheduled_at: Any = None,
    ) -> MessageRecord:
        """Edit a message that has not been dispatched yet."""
        current = await self.repository.get(message_id)
        if not current.is_pending:
            raise InvalidTransitionError(f"message {message_id} is {current.status.value} and can no longer be edited")
        validate_message(
            destination if destination is not None else current.destination,
            content if content is not None else current.content,
        )
        scheduled_ts = to_epoch(scheduled_at) if scheduled_at is not None else None
        updated = await self.repository.update_fields(
            message_id,
            destination=destination.strip() if destination is not None else None,
            content=content,
            scheduled_at=scheduled_ts,
        )
        record = await self.repository.get(message_id)
        if not updated and not record.is_pending:
            raise InvalidTransitionError(f"message {message_id} is {record.status.value} and can no longer be edited")
        return record

    async def cancel_message(self, message_id: int) -> MessageRecord:
        return await self.update_status(message_id, MessageStatus.CANCELLED)

    async def update_status(self, message_id: int, status: MessageStatus | str) -> MessageRecord:
        """Manually move a pending message into ``failed`` or ``cancelled``."""
        try:
            target = MessageStatus(status)
        except ValueError as exc:
            raise InvalidTransitionError(f"unknown status '{status}'") from exc
        if target is MessageStatus.SENT:
            raise InvalidTransitionError("only a delivery can mark a message as sent")
        current = await self.repository.get(message_id)
        if current.status is target:
            return current
        if not await self.repository.update_status(message_id, target):
            record = await self.repository.get(message_id)
            raise InvalidTransitionError(
                f"message {message_id} is {record.status.value}, cannot become {target.value}"
            )
        await self._refresh_pending_gauge()
        return await self.repository.get(message_id)

    async def delivery_time(self, delivery_id: str) -> Optional[int]:
        """Return the cached delivery time for ``delivery_id``, if known."""
        if self.cache is None:
            return None
        return await self.cache.get(delivery_id)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        if cmd == "start":
            started = await self.start()
            return {"ok": True, "running": True, "started": started}
        if cmd == "stop":
            stopped = await self.stop()
            return {"ok": True, "running": self.is_running, "stopped": stopped}
        if cmd == "run now":
            if not self.run_now():
                return {"ok": False, "error": "dispatcher is not running"}
            return {"ok": True}
        if cmd == "status":
            return {"ok": True, "running": self.is_running}
        return {"ok": False, "error": "unknown command"}
