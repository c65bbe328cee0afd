from datetime import datetime, timedelta, timezone

import pytest

from async_message_dispatcher.models import (
    MAX_CONTENT_LENGTH,
    ContentTooLongError,
    MessageRecord,
    MessageStatus,
    MessageValidationError,
    from_epoch,
    to_epoch,
    validate_message,
)


def test_validate_message_accepts_content_at_limit():
    validate_message("+905551111111", "x" * MAX_CONTENT_LENGTH)


def test_validate_message_rejects_too_long_content():
    with pytest.raises(ContentTooLongError) as excinfo:
        validate_message("+905551111111", "x" * (MAX_CONTENT_LENGTH + 1))
    assert excinfo.value.length == MAX_CONTENT_LENGTH + 1
    assert excinfo.value.code == "content_too_long"
    assert isinstance(excinfo.value, MessageValidationError)


@pytest.mark.parametrize("destination,content", [("", "hi"), ("   ", "hi"), (None, "hi"), ("+90", ""), ("+90", None)])
def test_validate_message_rejects_missing_fields(destination, content):
    with pytest.raises(MessageValidationError):
        validate_message(destination, content)


def test_to_epoch_treats_naive_datetimes_as_utc():
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    naive = datetime(2024, 1, 1, 12, 0)
    assert to_epoch(aware) == to_epoch(naive) == 1704110400
    shifted = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_epoch(shifted) == 1704110400
    assert to_epoch(1704110400) == 1704110400


def test_to_epoch_rounds_fractions_up():
    assert to_epoch(1704110400.2) == 1704110401
    assert to_epoch(datetime(2024, 1, 1, 12, 0, 0, 800000, tzinfo=timezone.utc)) == 1704110401


def test_to_epoch_rejects_strings():
    with pytest.raises(MessageValidationError):
        to_epoch("tomorrow")


def test_from_epoch():
    assert from_epoch(None) is None
    assert from_epoch(1704110400) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_message_record_from_row():
    record = MessageRecord.from_row(
        {
            "id": 3,
            "destination": "+905551111111",
            "content": "hello",
            "scheduled_at": 100,
            "status": "pending",
        }
    )
    assert record.is_pending
    assert record.delivery_id is None and record.sent_at is None
    assert record.scheduled_at == 100

    record.status = MessageStatus.SENT
    assert not record.is_pending
    assert record.to_dict()["status"] == "sent"


def test_terminal_statuses():
    assert not MessageStatus.PENDING.is_terminal
    assert all(s.is_terminal for s in (MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED))
