"""Shared fixtures: an in-memory Redis, a recording transport and a fake STOMP broker."""
import asyncio
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

import fakeredis
import pytest
from stomp.exception import ConnectFailedException
from stomp.utils import Frame

from backend import RedisStore
from services.connection_registry import ConnectionRegistry
from services.message_relay import MessageRelay
from services.room_directory import RoomDirectory

SERVER_ID = "server-1"


async def wait_until(predicate, timeout: float = 2.0):
    """Poll ``predicate`` until it is truthy; the bridge acks from an executor thread."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class RecordingTransport:
    """Single-process stand-in for WebSocketTransport that records every emit."""

    def __init__(self, server_id: str = SERVER_ID):
        self.server_id = server_id
        self.live: Set[str] = set()
        self.groups: Dict[str, Set[str]] = {}
        self.emitted: List[Tuple[str, str, Any]] = []
        self.failing_groups: Set[str] = set()

    def attach(self, connection_id: str, websocket=None):
        self.live.add(connection_id)

    async def detach(self, connection_id: str):
        self.live.discard(connection_id)
        await self.leave_all(connection_id)

    async def leave_all(self, connection_id: str) -> List[str]:
        left = sorted(group for group, members in self.groups.items() if connection_id in members)
        for group in left:
            self.groups[group].discard(connection_id)
        return left

    async def join(self, connection_id: str, group: str, owner_process_id: Optional[str] = None) -> bool:
        if group in self.failing_groups:
            raise RuntimeError(f"join to {group} failed")
        if connection_id not in self.live:
            return False
        self.groups.setdefault(group, set()).add(connection_id)
        return True

    async def emit(self, connection_id: str, channel: str, payload: Any, owner_process_id: Optional[str] = None) -> bool:
        if connection_id not in self.live:
            return False
        self.emitted.append((connection_id, channel, payload))
        return True

    async def emit_to_group(self, group: str, channel: str, payload: Any) -> int:
        members = sorted(conn for conn in self.groups.get(group, ()) if conn in self.live)
        for connection_id in members:
            self.emitted.append((connection_id, channel, payload))
        return len(members)

    def received(self, connection_id: str) -> List[Tuple[str, Any]]:
        return [(channel, payload) for conn, channel, payload in self.emitted if conn == connection_id]


class FakeStompConnection:
    def __init__(self, broker: "FakeBroker"):
        self.broker = broker
        self.listeners: Dict[str, Any] = {}
        self.connected = False
        self.disconnects = 0

    def set_listener(self, name, listener):
        self.listeners[name] = listener

    def connect(self, username=None, passcode=None, wait=False, **kwargs):
        if self.broker.fail_connects > 0:
            self.broker.fail_connects -= 1
            raise ConnectFailedException()
        if self.broker.connect_delay:
            time.sleep(self.broker.connect_delay)
        self.connected = True

    def is_connected(self):
        return self.connected

    def subscribe(self, destination, id, ack="auto", headers=None, **kwargs):
        self.broker.subscriptions[destination] = (self, id, ack)

    def ack(self, id, subscription, **kwargs):
        self.broker.acked.append(id)

    def nack(self, id, subscription, **kwargs):
        self.broker.nacked.append(id)
        self.broker.redeliver(id)

    def send(self, destination, body, content_type=None, headers=None, **kwargs):
        self.broker.sent.append((destination, body, content_type))

    def disconnect(self, **kwargs):
        self.disconnects += 1
        self.connected = False


class FakeBroker:
    """Test-double broker: redelivers nacked messages up to ``max_redeliveries`` times."""

    def __init__(self, max_redeliveries: int = 1):
        self.max_redeliveries = max_redeliveries
        self.fail_connects = 0
        self.connect_delay = 0.0
        self.connections: List[FakeStompConnection] = []
        self.subscriptions: Dict[str, Tuple[FakeStompConnection, str, str]] = {}
        self.messages: Dict[str, Tuple[str, str]] = {}
        self.deliveries: Dict[str, int] = defaultdict(int)
        self.acked: List[str] = []
        self.nacked: List[str] = []
        self.sent: List[Tuple[str, str, Optional[str]]] = []

    def connection_factory(self) -> FakeStompConnection:
        connection = FakeStompConnection(self)
        self.connections.append(connection)
        return connection

    def deliver(self, queue_name: str, body: str, message_id: str):
        destination = f"/queue/{queue_name}"
        connection, subscription_id, _ = self.subscriptions[destination]
        self.messages[message_id] = (queue_name, body)
        self.deliveries[message_id] += 1
        frame = Frame("MESSAGE", {"message-id": message_id, "subscription": subscription_id, "destination": destination}, body)
        for listener in connection.listeners.values():
            listener.on_message(frame)

    def redeliver(self, message_id: str):
        if self.deliveries[message_id] > self.max_redeliveries:
            return
        queue_name, body = self.messages[message_id]
        self.deliver(queue_name, body, message_id)

    def settled(self, message_id: str) -> bool:
        return message_id in self.acked or self.nacked.count(message_id) > self.max_redeliveries


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(redis_client):
    return RedisStore(redis_client)


@pytest.fixture
def registry(store):
    return ConnectionRegistry(store)


@pytest.fixture
def directory(store):
    return RoomDirectory(store)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def relay(registry, directory, transport):
    return MessageRelay(registry, directory, transport, SERVER_ID)


@pytest.fixture
def broker():
    return FakeBroker()
