import pytest
from unittest.mock import AsyncMock, Mock

from app.core.exceptions import AlreadySubscribedError
from app.services.realtime_bus import ChangeEvent, EventFilter


def change(table="messages", event_type="INSERT", **new):
    return ChangeEvent(table=table, event_type=event_type, new=new)


@pytest.mark.parametrize("event_filter,record,expected", [
    (EventFilter("messages"), {"sender_id": 1}, True),
    (EventFilter("messages", "INSERT", "sender_id=eq.1"), {"sender_id": 1}, True),
    (EventFilter("messages", "INSERT", "sender_id=eq.1"), {"sender_id": 2}, False),
    (EventFilter("messages", "INSERT", "sender_id=neq.1"), {"sender_id": 2}, True),
    (EventFilter("messages", "INSERT", "sender_id=neq.1"), {"sender_id": 1}, False),
    (EventFilter("messages", "UPDATE"), {"sender_id": 1}, False),
    (EventFilter("conversation_participants"), {"sender_id": 1}, False),
])
def test_filter_matching(event_filter, record, expected):
    assert event_filter.matches(change(**record)) is expected

@pytest.mark.parametrize("expression", ["sender_id", "sender_id=gt.1", "=eq.1", "sender_id=eq"])
def test_invalid_filter_is_rejected(expression):
    with pytest.raises(ValueError):
        EventFilter("messages", "INSERT", expression)

def test_unknown_event_type_is_rejected():
    with pytest.raises(ValueError):
        EventFilter("messages", "UPSERT")

@pytest.mark.asyncio
async def test_duplicate_channel_name_raises(bus):
    await bus.subscribe("unread-messages-1", [EventFilter("messages")], AsyncMock())

    with pytest.raises(AlreadySubscribedError):
        await bus.subscribe("unread-messages-1", [EventFilter("messages")], AsyncMock())

@pytest.mark.asyncio
async def test_publish_reaches_matching_channels_only(bus):
    inbox, other = AsyncMock(), AsyncMock()
    await bus.subscribe("inbox", [EventFilter("messages", "INSERT", "sender_id=neq.1")], inbox)
    await bus.subscribe("other", [EventFilter("conversation_participants", "UPDATE")], other)

    delivered = await bus.publish(change(sender_id=2))

    assert delivered == 1
    inbox.assert_awaited_once()
    other.assert_not_awaited()

@pytest.mark.asyncio
async def test_failing_callback_does_not_block_delivery(bus):
    synchronous = Mock(side_effect=RuntimeError("boom"))
    healthy = AsyncMock()
    await bus.subscribe("broken", [EventFilter("messages")], synchronous)
    await bus.subscribe("healthy", [EventFilter("messages")], healthy)

    delivered = await bus.publish(change(sender_id=2))

    assert delivered == 2
    healthy.assert_awaited_once()

@pytest.mark.asyncio
async def test_unsubscribe(bus):
    await bus.subscribe("inbox", [EventFilter("messages")], AsyncMock())

    assert await bus.unsubscribe("inbox") is True
    assert await bus.unsubscribe("inbox") is False
    assert await bus.publish(change(sender_id=2)) == 0
