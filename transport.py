import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from logging_config import get_logger
from redis_keys import REDIS_GROUP_CHANNEL, REDIS_PROCESS_CHANNEL

logger = get_logger(__name__)


def encode_event(channel: str, payload: Any) -> str:
    return json.dumps({"event": channel, "data": payload})


class WebSocketTransport:
    """Live WebSocket sessions of this process, grouped by room.

    Sessions are tracked in memory per process. Room fan-out goes through a
    Redis pub/sub channel per group so every process broadcasts to its own
    local members; emits and joins aimed at a connection owned by another
    process are forwarded on that process's channel.
    """

    def __init__(self, redis_client: Redis, server_id: str):
        self.redis_client = redis_client
        self.server_id = server_id
        # Format: {connection_id: websocket}
        self.sessions: Dict[str, WebSocket] = {}
        # Format: {group: {connection_id, ...}} for local sessions only
        self.groups: Dict[str, Set[str]] = {}
        # Format: {group: task}
        self.group_tasks: Dict[str, asyncio.Task] = {}
        # Serialises listener creation and teardown per group
        self.group_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.process_task: Optional[asyncio.Task] = None

    async def start(self):
        """Subscribe to this process's control channel."""
        channel = REDIS_PROCESS_CHANNEL.format(process_id=self.server_id)
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(channel)
        self.process_task = asyncio.create_task(self._listen(pubsub, channel, self.handle_process_message))
        logger.info(f"Transport started for process {self.server_id}")

    async def stop(self):
        tasks = list(self.group_tasks.values())
        if self.process_task:
            tasks.append(self.process_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.group_tasks.clear()
        self.process_task = None
        logger.info(f"Transport stopped for process {self.server_id}")

    def attach(self, connection_id: str, websocket: WebSocket):
        self.sessions[connection_id] = websocket
        logger.debug(f"Attached connection {connection_id} (local sessions: {len(self.sessions)})")

    async def detach(self, connection_id: str):
        self.sessions.pop(connection_id, None)
        await self.leave_all(connection_id)
        logger.debug(f"Detached connection {connection_id} (local sessions: {len(self.sessions)})")

    async def leave_all(self, connection_id: str) -> List[str]:
        """Remove a local connection from every group it joined. Returns the groups it left."""
        left = [g for g, members in self.groups.items() if connection_id in members]
        for group in left:
            async with self.group_locks[group]:
                members = self.groups.get(group)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    await self._drop_group(group)
        return left

    def is_local(self, connection_id: str) -> bool:
        return connection_id in self.sessions

    async def join(self, connection_id: str, group: str, owner_process_id: Optional[str] = None) -> bool:
        """Add a connection to a group. Returns False if the connection cannot be found anywhere."""
        if self.is_local(connection_id):
            async with self.group_locks[group]:
                await self._ensure_group_listener(group)
                self.groups.setdefault(group, set()).add(connection_id)
            logger.debug(f"Connection {connection_id} joined group {group}")
            return True
        if owner_process_id and owner_process_id != self.server_id:
            await self._publish_to_process(owner_process_id, {"type": "join", "connectionId": connection_id, "group": group})
            logger.debug(f"Forwarded join of {connection_id} to group {group} to process {owner_process_id}")
            return True
        logger.warning(f"Cannot join group {group}: connection {connection_id} is not live on this process")
        return False

    async def emit(self, connection_id: str, channel: str, payload: Any, owner_process_id: Optional[str] = None) -> bool:
        """Send one event to one connection, forwarding to its owner process when it is remote."""
        websocket = self.sessions.get(connection_id)
        if websocket is not None:
            await websocket.send_text(encode_event(channel, payload))
            logger.debug(f"Emitted {channel} to connection {connection_id}")
            return True
        if owner_process_id and owner_process_id != self.server_id:
            await self._publish_to_process(owner_process_id, {
                "type": "emit",
                "connectionId": connection_id,
                "channel": channel,
                "payload": payload,
            })
            return True
        logger.warning(f"Cannot emit {channel}: connection {connection_id} is not live on this process")
        return False

    async def emit_to_group(self, group: str, channel: str, payload: Any) -> int:
        """Broadcast to every process; each one delivers to its local members of ``group``."""
        message = json.dumps({"channel": channel, "payload": payload})
        subscribers = await self.redis_client.publish(REDIS_GROUP_CHANNEL.format(group=group), message)
        logger.debug(f"Published {channel} to group {group}, {subscribers} subscribers")
        return subscribers

    async def deliver_to_group(self, group: str, channel: str, payload: Any) -> int:
        """Send to the local members of ``group``. Dead sockets are dropped."""
        members = list(self.groups.get(group, ()))
        if not members:
            return 0
        text = encode_event(channel, payload)
        send_tasks = []
        targets = []
        for conn_id in members:
            websocket = self.sessions.get(conn_id)
            if websocket is None:
                self.groups[group].discard(conn_id)
                continue
            send_tasks.append(websocket.send_text(text))
            targets.append(conn_id)

        results = await asyncio.gather(*send_tasks, return_exceptions=True)
        delivered = 0
        for conn_id, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Error sending to connection {conn_id} in group {group}: {result}")
                await self.detach(conn_id)
            else:
                delivered += 1
        logger.debug(f"Delivered {channel} to {delivered} local connections in group {group}")
        return delivered

    async def handle_process_message(self, message: Dict[str, Any]):
        message_type = message.get("type")
        connection_id = message.get("connectionId")
        if message_type == "join":
            await self.join(connection_id, message["group"])
        elif message_type == "emit":
            await self.emit(connection_id, message["channel"], message.get("payload"))
        else:
            logger.warning(f"Ignoring unknown process message type: {message_type}")

    async def _ensure_group_listener(self, group: str):
        task = self.group_tasks.get(group)
        if task is not None and not task.done():
            return
        channel = REDIS_GROUP_CHANNEL.format(group=group)
        pubsub = self.redis_client.pubsub()
        # Subscribe before returning so no broadcast sent after the join is missed
        await pubsub.subscribe(channel)

        async def on_message(message: Dict[str, Any]):
            await self.deliver_to_group(group, message["channel"], message.get("payload"))

        self.group_tasks[group] = asyncio.create_task(self._listen(pubsub, channel, on_message))
        logger.info(f"Started Redis pub/sub listener for group {group}")

    async def _drop_group(self, group: str):
        self.groups.pop(group, None)
        task = self.group_tasks.pop(group, None)
        if task is None:
            return
        task.cancel()
        # A listener dropping its own group cannot wait for itself
        if task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug(f"No more local connections in group {group}, listener cancelled")

    async def _publish_to_process(self, process_id: str, message: Dict[str, Any]):
        await self.redis_client.publish(REDIS_PROCESS_CHANNEL.format(process_id=process_id), json.dumps(message))

    async def _listen(self, pubsub: PubSub, channel: str, on_message):
        logger.debug(f"Listening on Redis channel {channel}")
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    await on_message(json.loads(message["data"]))
                except json.JSONDecodeError as e:
                    logger.error(f"Error parsing message from Redis channel {channel}: {e}")
                except Exception as e:
                    logger.error(f"Error processing Redis message on channel {channel}: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info(f"Redis listener cancelled for channel {channel}")
            raise
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
                logger.debug(f"Closed pub/sub connection for channel {channel}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for channel {channel}: {e}")
