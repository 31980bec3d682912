from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from backend import RedisStore
from logging_config import get_logger
from redis_keys import REDIS_ROOM_KEY, REDIS_ROOM_USERS_KEY, REDIS_USER_ROOMS_KEY
from schemas.rooms import Room, RoomPrefix, RoomType

logger = get_logger(__name__)

# Bounded retries for create_room when the existing record disappears between SET NX and GET
CREATE_ROOM_ATTEMPTS = 3


class RoomDirectory:
    """Room records and the two-way user/room membership index."""

    def __init__(self, store: RedisStore):
        self.store = store
        self.redis_client = store.redis_client

    @staticmethod
    def derive_private_room_id(user_a: str, user_b: str) -> str:
        first, second = sorted([user_a, user_b])
        return f"{RoomPrefix.PRIVATE.value}{first}_{second}"

    async def create_room(self, room_type: RoomType, room_id: str, metadata: Optional[Dict[str, Any]] = None) -> Room:
        """Create a room, or return the existing record untouched if ``room_id`` is taken."""
        room = Room(id=room_id, type=room_type, metadata=metadata or {})
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        for _ in range(CREATE_ROOM_ATTEMPTS):
            created = await self.store.call("create_room", self.redis_client.set(key, room.model_dump_json(), nx=True))
            if created:
                logger.info(f"Created {room_type.value} room {room_id}")
                return room
            existing = await self.get_room(room_id)
            if existing is not None:
                logger.debug(f"Room {room_id} already exists, returning existing record")
                return existing
        raise RuntimeError(f"Room {room_id} could not be created or read back")

    async def create_private_room(self, user_a: str, user_b: str, metadata: Optional[Dict[str, Any]] = None) -> Room:
        return await self.create_room(RoomType.PRIVATE, self.derive_private_room_id(user_a, user_b), metadata)

    async def create_event_room(self, event_id: str, metadata: Optional[Dict[str, Any]] = None) -> Room:
        return await self.create_room(RoomType.EVENT, f"{RoomPrefix.EVENT.value}{event_id}", metadata)

    async def create_jam_room(self, jam_id: str, metadata: Optional[Dict[str, Any]] = None) -> Room:
        return await self.create_room(RoomType.JAM, f"{RoomPrefix.JAM.value}{jam_id}", metadata)

    async def get_room(self, room_id: str) -> Optional[Room]:
        raw = await self.store.call("get_room", self.redis_client.get(REDIS_ROOM_KEY.format(room_id=room_id)))
        if raw is None:
            return None
        try:
            return Room.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Room {room_id} has an unreadable record: {e}")
            raise

    async def room_exists(self, room_id: str) -> bool:
        count = await self.store.call("room_exists", self.redis_client.exists(REDIS_ROOM_KEY.format(room_id=room_id)))
        return count == 1

    async def add_member(self, room_id: str, user_id: str):
        # Both directions of the index change together
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.sadd(REDIS_ROOM_USERS_KEY.format(room_id=room_id), user_id)
        pipe.sadd(REDIS_USER_ROOMS_KEY.format(user_id=user_id), room_id)
        await self.store.call("add_member", pipe.execute())
        logger.info(f"User {user_id} added to room {room_id}")

    async def remove_member(self, room_id: str, user_id: str):
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.srem(REDIS_ROOM_USERS_KEY.format(room_id=room_id), user_id)
        pipe.srem(REDIS_USER_ROOMS_KEY.format(user_id=user_id), room_id)
        await self.store.call("remove_member", pipe.execute())
        logger.info(f"User {user_id} removed from room {room_id}")

    async def members_of(self, room_id: str) -> Set[str]:
        return set(await self.store.call("members_of", self.redis_client.smembers(REDIS_ROOM_USERS_KEY.format(room_id=room_id))))

    async def rooms_of(self, user_id: str) -> Set[str]:
        return set(await self.store.call("rooms_of", self.redis_client.smembers(REDIS_USER_ROOMS_KEY.format(user_id=user_id))))
