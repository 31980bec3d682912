from unittest.mock import AsyncMock

import pytest

from errors import RoomNotFoundError, UserUnreachableError
from schemas.messages import ChatMessage, Notification, RoomDestination, UserDestination
from services.queue_handlers import QueueMessageHandlers


@pytest.fixture
def relay():
    mock = AsyncMock()
    mock.send_to = AsyncMock()
    return mock


@pytest.fixture
def handlers(relay):
    return QueueMessageHandlers(relay, "new-message", "new-notification")


@pytest.mark.asyncio
async def test_chat_message_prefers_room(handlers, relay):
    message = ChatMessage(id="m1", sender_id="alice", content="hi", room_id="event-room_1", dest_id="bob")

    await handlers.handle_chat_message(message)

    relay.send_to.assert_awaited_once_with(
        RoomDestination(id="event-room_1"),
        "new-message",
        {"id": "m1", "content": "hi", "destId": "bob", "roomId": "event-room_1", "senderId": "alice"},
    )


@pytest.mark.asyncio
async def test_chat_message_falls_back_to_user(handlers, relay):
    message = ChatMessage(id="m1", sender_id="alice", content="hi", dest_id="bob")

    await handlers.handle_chat_message(message)

    destination, channel, _ = relay.send_to.await_args.args
    assert destination == UserDestination(id="bob")
    assert channel == "new-message"


@pytest.mark.asyncio
async def test_notification_prefers_user(handlers, relay):
    notification = Notification(id="n1", title="Hello", content="body", dest_id="bob", room_id="jam-room_3")

    await handlers.handle_notification(notification)

    destination, channel, payload = relay.send_to.await_args.args
    assert destination == UserDestination(id="bob")
    assert channel == "new-notification"
    assert payload["title"] == "Hello"


@pytest.mark.asyncio
async def test_notification_falls_back_to_room(handlers, relay):
    notification = Notification(id="n1", title="Hello", content="body", room_id="jam-room_3")

    await handlers.handle_notification(notification)

    destination, _, _ = relay.send_to.await_args.args
    assert destination == RoomDestination(id="jam-room_3")


@pytest.mark.asyncio
async def test_envelope_without_target_is_dropped(handlers, relay):
    await handlers.handle_chat_message(ChatMessage(id="m1", sender_id="alice", content="hi"))
    await handlers.handle_notification(Notification(id="n1", title="t", content="c"))

    relay.send_to.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [RoomNotFoundError("event-room_x"), UserUnreachableError("bob")])
async def test_routing_errors_propagate(handlers, relay, error):
    relay.send_to.side_effect = error

    with pytest.raises(type(error)):
        await handlers.handle_chat_message(ChatMessage(id="m1", sender_id="alice", content="hi", room_id="event-room_x"))
