from typing import Any, List, Optional

from errors import DestinationNotFoundError, RoomNotFoundError, UserUnreachableError
from logging_config import get_logger
from schemas.messages import Destination, RoomDestination, UserDestination
from services.connection_registry import ConnectionRegistry
from services.room_directory import RoomDirectory
from transport import WebSocketTransport

logger = get_logger(__name__)


class MessageRelay:
    """Routes messages to rooms or users and keeps live transport groups in step with membership.

    The relay only reads registry and directory state; the one write it performs
    is registering a connection on connect and unregistering it on disconnect.
    """

    def __init__(self, registry: ConnectionRegistry, directory: RoomDirectory, transport: WebSocketTransport, server_id: str):
        self.registry = registry
        self.directory = directory
        self.transport = transport
        self.server_id = server_id

    async def on_connect(self, connection_id: str, user_id: str) -> List[str]:
        """Register the connection and rejoin the user's rooms. Returns the rooms actually joined.

        Each room join is independent: a stale or broken room is logged and
        skipped so it never prevents the user from connecting.
        """
        previous_user = await self.registry.register(user_id, connection_id, self.server_id)
        if previous_user and previous_user != user_id:
            # A rebound socket drops the previous user's rooms
            left = await self.transport.leave_all(connection_id)
            logger.info(f"Connection {connection_id} left {len(left)} rooms of previous user {previous_user}")
        room_ids = await self.directory.rooms_of(user_id)

        joined = []
        for room_id in sorted(room_ids):
            try:
                if not await self.directory.room_exists(room_id):
                    raise RoomNotFoundError(room_id)
                if await self.transport.join(connection_id, room_id, self.server_id):
                    joined.append(room_id)
            except Exception as e:
                logger.warning(f"Skipping room {room_id} for user {user_id} on connection {connection_id}: {e}")

        logger.info(f"User {user_id} registered with connection {connection_id}, joined {len(joined)}/{len(room_ids)} rooms")
        return joined

    async def on_disconnect(self, connection_id: str) -> Optional[str]:
        user_id = await self.registry.resolve_user(connection_id)
        if user_id is None:
            logger.debug(f"Connection {connection_id} disconnected without a registered user")
            return None
        await self.registry.unregister(user_id, connection_id)
        logger.info(f"User {user_id} disconnected (connection: {connection_id})")
        return user_id

    async def broadcast_to_room(self, room_id: str, channel: str, payload: Any):
        if not await self.directory.room_exists(room_id):
            logger.warning(f"Broadcast on {channel} rejected: room {room_id} not found")
            raise RoomNotFoundError(room_id)
        logger.info(f"Broadcasting {channel} to room {room_id}")
        await self.transport.emit_to_group(room_id, channel, payload)

    async def add_user_to_room_live(self, room_id: str, user_id: str) -> bool:
        """Join the user's most recent connection to the room's group, if the user is online."""
        if not await self.directory.room_exists(room_id):
            raise RoomNotFoundError(room_id)
        connection = await self.registry.get_active_connection(user_id)
        if connection is None:
            logger.info(f"User {user_id} has no active connection, live join to room {room_id} skipped")
            return False
        joined = await self.transport.join(connection.connection_id, room_id, connection.owner_process_id)
        if joined:
            logger.info(f"Connection {connection.connection_id} of user {user_id} joined room {room_id}")
        return joined

    async def send_to(self, destination: Destination, channel: str, payload: Any):
        """Deliver to a room (fan-out) or to a user's most recent connection (unicast)."""
        if isinstance(destination, RoomDestination):
            await self.broadcast_to_room(destination.id, channel, payload)
            return
        if not isinstance(destination, UserDestination) or not destination.id:
            raise DestinationNotFoundError(getattr(destination, "id", str(destination)))

        user_id = destination.id
        if not await self.registry.exists(user_id):
            logger.warning(f"Send on {channel} failed: user {user_id} has no live connection")
            raise UserUnreachableError(user_id)
        connection = await self.registry.get_active_connection(user_id)
        if connection is None:
            raise UserUnreachableError(user_id)

        delivered = await self.transport.emit(connection.connection_id, channel, payload, connection.owner_process_id)
        if not delivered:
            raise UserUnreachableError(user_id)
        logger.info(f"Sent {channel} to user {user_id} on connection {connection.connection_id}")
