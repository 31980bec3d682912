from typing import Optional

from logging_config import get_logger
from schemas.messages import ChatMessage, Destination, Notification, RoomDestination, UserDestination
from services.message_relay import MessageRelay

logger = get_logger(__name__)


class QueueMessageHandlers:
    """Turns queue envelopes into relay calls.

    Routing errors raised by the relay propagate so the bridge negatively
    acknowledges the message. An envelope with no target at all is logged and
    returned normally, since redelivering it could never succeed.
    """

    def __init__(self, relay: MessageRelay, message_channel: str, notification_channel: str):
        self.relay = relay
        self.message_channel = message_channel
        self.notification_channel = notification_channel

    async def handle_chat_message(self, message: ChatMessage):
        destination: Optional[Destination] = None
        if message.room_id:
            destination = RoomDestination(id=message.room_id)
        elif message.dest_id:
            destination = UserDestination(id=message.dest_id)

        if destination is None:
            logger.error(f"Invalid message {message.id}: missing roomId and destId")
            return

        logger.info(f"Relaying chat message {message.id} from {message.sender_id} to {destination!r}")
        await self.relay.send_to(destination, self.message_channel, message.to_payload())

    async def handle_notification(self, notification: Notification):
        destination: Optional[Destination] = None
        if notification.dest_id:
            destination = UserDestination(id=notification.dest_id)
        elif notification.room_id:
            destination = RoomDestination(id=notification.room_id)

        if destination is None:
            logger.error(f"Invalid notification {notification.id}: missing destId and roomId")
            return

        logger.info(f"Relaying notification {notification.id} to {destination!r}")
        await self.relay.send_to(destination, self.notification_channel, notification.to_payload())
