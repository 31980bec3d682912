import json
from typing import List, Optional

from pydantic import ValidationError
from redis.asyncio.client import Pipeline

from backend import RedisStore
from logging_config import get_logger
from redis_keys import REDIS_PROCESS_CONNECTIONS_KEY, REDIS_SOCKET_USER_KEY, REDIS_USER_CONNECTIONS_KEY
from schemas.connections import Connection

logger = get_logger(__name__)


def _user_key(user_id: str) -> str:
    return REDIS_USER_CONNECTIONS_KEY.format(user_id=user_id)


def _socket_key(connection_id: str) -> str:
    return REDIS_SOCKET_USER_KEY.format(connection_id=connection_id)


def _process_key(process_id: str) -> str:
    return REDIS_PROCESS_CONNECTIONS_KEY.format(process_id=process_id)


def _process_member(user_id: str, connection_id: str) -> str:
    return f"{user_id}|{connection_id}"


def _parse_members(members) -> List[Connection]:
    connections = []
    for raw in members:
        try:
            connections.append(Connection.deserialize(raw))
        except (ValidationError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable connection record {raw!r}: {e}")
    return connections


class ConnectionRegistry:
    """Maps users to their live connections, and connections back to users.

    Every mutation runs as a WATCH/MULTI/EXEC transaction so that two processes
    registering the same connection id, or the same user, never interleave a
    read with somebody else's write.
    """

    def __init__(self, store: RedisStore):
        self.store = store
        self.redis_client = store.redis_client

    async def register(self, user_id: str, connection_id: str, owner_process_id: str) -> Optional[str]:
        """Bind ``connection_id`` to ``user_id``, revoking any previous binding in the same transaction.

        Returns the user the connection was bound to before, or None for a fresh connection.
        """
        connection = Connection(user_id=user_id, connection_id=connection_id, owner_process_id=owner_process_id)
        socket_key = _socket_key(connection_id)
        user_key = _user_key(user_id)

        async def rebind(pipe: Pipeline):
            previous_user = await pipe.get(socket_key)
            stale = []
            if previous_user and previous_user != user_id:
                previous_key = _user_key(previous_user)
                await pipe.watch(previous_key)
                stale.extend(
                    (previous_key, conn)
                    for conn in _parse_members(await pipe.smembers(previous_key))
                    if conn.connection_id == connection_id
                )
            # Re-registering on the same user replaces the old timestamped entry
            stale.extend(
                (user_key, conn)
                for conn in _parse_members(await pipe.smembers(user_key))
                if conn.connection_id == connection_id
            )

            pipe.multi()
            for key, conn in stale:
                pipe.srem(key, conn.serialize())
                pipe.srem(_process_key(conn.owner_process_id), _process_member(conn.user_id, conn.connection_id))
            pipe.sadd(user_key, connection.serialize())
            pipe.set(socket_key, user_id)
            pipe.sadd(_process_key(owner_process_id), _process_member(user_id, connection_id))
            return previous_user

        previous_user = await self.store.call(
            "register",
            self.redis_client.transaction(rebind, socket_key, user_key, value_from_callable=True),
        )
        if previous_user and previous_user != user_id:
            logger.info(f"Connection {connection_id} rebound from user {previous_user} to {user_id}")
        logger.info(f"Registered connection {connection_id} for user {user_id} on process {owner_process_id}")
        return previous_user

    async def unregister(self, user_id: str, connection_id: str) -> bool:
        """Remove ``connection_id`` from ``user_id``. Returns False when there was nothing to remove."""
        socket_key = _socket_key(connection_id)
        user_key = _user_key(user_id)

        async def remove(pipe: Pipeline):
            stale = [conn for conn in _parse_members(await pipe.smembers(user_key)) if conn.connection_id == connection_id]
            owner = await pipe.get(socket_key)

            pipe.multi()
            for conn in stale:
                pipe.srem(user_key, conn.serialize())
                pipe.srem(_process_key(conn.owner_process_id), _process_member(user_id, connection_id))
            # Only clear the reverse index if it still points at this user
            if owner == user_id:
                pipe.delete(socket_key)
            return bool(stale) or owner == user_id

        removed = await self.store.call(
            "unregister",
            self.redis_client.transaction(remove, socket_key, user_key, value_from_callable=True),
        )
        if removed:
            logger.info(f"Unregistered connection {connection_id} for user {user_id}")
        else:
            logger.debug(f"Connection {connection_id} was not registered for user {user_id}")
        return removed

    async def resolve_user(self, connection_id: str) -> Optional[str]:
        return await self.store.call("resolve_user", self.redis_client.get(_socket_key(connection_id)))

    async def list_connections(self, user_id: str) -> List[Connection]:
        """All live connections of a user, most recent first."""
        members = await self.store.call("list_connections", self.redis_client.smembers(_user_key(user_id)))
        connections = _parse_members(members)
        connections.sort(key=lambda conn: conn.established_at, reverse=True)
        return connections

    async def get_active_connection(self, user_id: str) -> Optional[Connection]:
        connections = await self.list_connections(user_id)
        return connections[0] if connections else None

    async def resolve_active_connection(self, user_id: str) -> Optional[str]:
        connection = await self.get_active_connection(user_id)
        return connection.connection_id if connection else None

    async def exists(self, user_id: str) -> bool:
        count = await self.store.call("exists", self.redis_client.scard(_user_key(user_id)))
        return count > 0

    async def connected_users(self) -> List[str]:
        """Ids of every user with at least one live connection, on any process."""
        prefix, suffix = REDIS_USER_CONNECTIONS_KEY.split("{user_id}")

        async def scan():
            return [key async for key in self.redis_client.scan_iter(match=f"{prefix}*{suffix}", count=500)]

        keys = await self.store.call("connected_users", scan())
        # Empty sets do not exist in Redis; SCAN may repeat keys
        return sorted({key[len(prefix):-len(suffix)] for key in keys})

    async def sweep_process(self, owner_process_id: str) -> int:
        """Drop every connection recorded for a process, e.g. after it restarted."""
        process_key = _process_key(owner_process_id)
        members = await self.store.call("sweep_process", self.redis_client.smembers(process_key))
        swept = 0
        for member in members:
            user_id, _, connection_id = member.rpartition("|")
            if not connection_id:
                continue
            if await self.unregister(user_id, connection_id):
                swept += 1
        await self.store.call("sweep_process", self.redis_client.delete(process_key))
        logger.info(f"Swept {swept} stale connections for process {owner_process_id}")
        return swept
