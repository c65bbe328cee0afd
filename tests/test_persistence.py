import pytest

from async_message_dispatcher.models import InvalidTransitionError, MessageNotFoundError, MessageStatus
from async_message_dispatcher.persistence import MessageRepository
from async_message_dispatcher.sql import create_adapter


async def make_repository(tmp_path) -> MessageRepository:
    repo = MessageRepository(create_adapter(str(tmp_path / "messages.db")))
    await repo.init_db()
    return repo


@pytest.mark.asyncio
async def test_create_and_get(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+905551111111", "hello", 1000)
    record = await repo.get(message_id)
    assert record.status is MessageStatus.PENDING
    assert record.destination == "+905551111111"
    assert record.scheduled_at == 1000
    assert record.delivery_id is None and record.sent_at is None
    assert record.created_at is not None

    with pytest.raises(MessageNotFoundError):
        await repo.get(message_id + 100)


@pytest.mark.asyncio
async def test_find_pending_orders_and_limits(tmp_path):
    repo = await make_repository(tmp_path)
    later = await repo.create("+1", "later", 300)
    oldest = await repo.create("+2", "oldest", 100)
    middle = await repo.create("+3", "middle", 200)
    future = await repo.create("+4", "future", 10_000)

    due = await repo.find_pending(before=500, limit=10)
    assert [r.id for r in due] == [oldest, middle, later]
    assert future not in [r.id for r in due]

    limited = await repo.find_pending(before=500, limit=2)
    assert [r.id for r in limited] == [oldest, middle]

    assert await repo.count_pending() == 4


@pytest.mark.asyncio
async def test_scheduled_at_equal_to_now_is_due(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+1", "edge", 500)
    assert [r.id for r in await repo.find_pending(before=500, limit=5)] == [message_id]


@pytest.mark.asyncio
async def test_mark_sent_is_single_guarded_transition(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+1", "hi", 100)

    assert await repo.mark_sent(message_id, "abc-1", 150) is True
    record = await repo.get(message_id)
    assert record.status is MessageStatus.SENT
    assert record.delivery_id == "abc-1"
    assert record.sent_at == 150

    # terminal records never change again
    assert await repo.mark_sent(message_id, "abc-2", 160) is False
    assert await repo.mark_failed(message_id, "late failure") is False
    assert await repo.update_status(message_id, MessageStatus.CANCELLED) is False
    record = await repo.get(message_id)
    assert (record.status, record.delivery_id, record.sent_at) == (MessageStatus.SENT, "abc-1", 150)
    assert await repo.find_pending(before=1000, limit=5) == []


@pytest.mark.asyncio
async def test_mark_failed_leaves_delivery_fields_unset(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+1", "hi", 100)
    assert await repo.mark_failed(message_id, "unexpected response status: 500") is True
    record = await repo.get(message_id)
    assert record.status is MessageStatus.FAILED
    assert record.error == "unexpected response status: 500"
    assert record.delivery_id is None and record.sent_at is None
    assert [r.id for r in await repo.find_by_status("failed")] == [message_id]


@pytest.mark.asyncio
async def test_update_status_refuses_pending_target(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+1", "hi", 100)
    with pytest.raises(InvalidTransitionError):
        await repo.update_status(message_id, MessageStatus.PENDING)
    assert await repo.update_status(message_id, "cancelled") is True
    assert (await repo.get(message_id)).status is MessageStatus.CANCELLED


@pytest.mark.asyncio
async def test_delivery_fields_are_written_once(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+1", "hi", 100)
    assert await repo.update_delivery_id(message_id, "first") is True
    assert await repo.update_delivery_id(message_id, "second") is False
    assert await repo.update_sent_at(message_id, 111) is True
    assert await repo.update_sent_at(message_id, 222) is False
    record = await repo.get(message_id)
    assert (record.delivery_id, record.sent_at) == ("first", 111)


@pytest.mark.asyncio
async def test_update_fields_only_on_pending(tmp_path):
    repo = await make_repository(tmp_path)
    message_id = await repo.create("+1", "hi", 100)
    assert await repo.update_fields(message_id) is False
    assert await repo.update_fields(message_id, content="changed", scheduled_at=50) is True
    record = await repo.get(message_id)
    assert (record.content, record.scheduled_at, record.destination) == ("changed", 50, "+1")

    await repo.update_status(message_id, MessageStatus.CANCELLED)
    assert await repo.update_fields(message_id, content="again") is False
    assert (await repo.get(message_id)).content == "changed"


@pytest.mark.asyncio
async def test_list_messages_returns_all_statuses(tmp_path):
    repo = await make_repository(tmp_path)
    a = await repo.create("+1", "a", 100)
    b = await repo.create("+2", "b", 200)
    await repo.mark_sent(a, "d-1", 120)
    records = await repo.list_messages()
    assert [(r.id, r.status) for r in records] == [(a, MessageStatus.SENT), (b, MessageStatus.PENDING)]
    assert [r.id for r in await repo.find_by_status(MessageStatus.SENT)] == [a]
