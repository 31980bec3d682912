import asyncio
import json
from itertools import count
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend import RedisStore
from errors import StoreUnavailableError
from services.connection_registry import ConnectionRegistry


@pytest.fixture
def ticking_clock(monkeypatch):
    """Each new Connection gets a strictly later establishedAt."""
    ticks = count(1_000)
    monkeypatch.setattr("schemas.connections.time.time", lambda: next(ticks))


@pytest.mark.asyncio
async def test_register_writes_both_indexes(registry, redis_client):
    await registry.register("alice", "c1", "server-1")

    assert await registry.resolve_user("c1") == "alice"
    assert await registry.exists("alice")
    connections = await registry.list_connections("alice")
    assert [conn.connection_id for conn in connections] == ["c1"]
    assert connections[0].owner_process_id == "server-1"

    raw = await redis_client.smembers("user:alice:connections")
    record = json.loads(next(iter(raw)))
    assert set(record) == {"userId", "connectionId", "ownerProcessId", "establishedAt"}
    assert await redis_client.get("socket:c1:user") == "alice"


@pytest.mark.asyncio
async def test_register_rebinds_connection_to_new_user(registry):
    await registry.register("u1", "c", "p")
    await registry.register("u2", "c", "p")

    assert await registry.resolve_user("c") == "u2"
    assert "c" not in [conn.connection_id for conn in await registry.list_connections("u1")]
    assert not await registry.exists("u1")
    assert [conn.connection_id for conn in await registry.list_connections("u2")] == ["c"]


@pytest.mark.asyncio
async def test_reregister_same_user_keeps_single_entry(registry, ticking_clock):
    await registry.register("alice", "c1", "server-1")
    await registry.register("alice", "c1", "server-1")

    connections = await registry.list_connections("alice")
    assert len(connections) == 1


@pytest.mark.asyncio
async def test_multi_device_user_resolves_most_recent(registry, ticking_clock):
    await registry.register("alice", "phone", "server-1")
    await registry.register("alice", "laptop", "server-2")

    connections = await registry.list_connections("alice")
    assert [conn.connection_id for conn in connections] == ["laptop", "phone"]
    assert await registry.resolve_active_connection("alice") == "laptop"

    await registry.unregister("alice", "laptop")
    assert await registry.resolve_active_connection("alice") == "phone"


@pytest.mark.asyncio
async def test_unregister_is_noop_when_absent(registry):
    assert await registry.unregister("ghost", "nope") is False
    assert await registry.resolve_user("nope") is None


@pytest.mark.asyncio
async def test_unregister_clears_reverse_index(registry):
    await registry.register("alice", "c1", "server-1")

    assert await registry.unregister("alice", "c1") is True
    assert await registry.resolve_user("c1") is None
    assert not await registry.exists("alice")
    assert await registry.resolve_active_connection("alice") is None


@pytest.mark.asyncio
async def test_unregister_stale_owner_keeps_new_binding(registry):
    await registry.register("u1", "c", "p")
    await registry.register("u2", "c", "p")

    await registry.unregister("u1", "c")

    assert await registry.resolve_user("c") == "u2"
    assert await registry.exists("u2")


@pytest.mark.asyncio
async def test_sweep_process_removes_only_that_process(registry):
    await registry.register("alice", "c1", "server-1")
    await registry.register("bob", "c2", "server-1")
    await registry.register("carol", "c3", "server-2")

    swept = await registry.sweep_process("server-1")

    assert swept == 2
    assert not await registry.exists("alice")
    assert not await registry.exists("bob")
    assert await registry.resolve_user("c3") == "carol"


@pytest.mark.asyncio
async def test_unreadable_records_are_skipped(registry, redis_client):
    await registry.register("alice", "c1", "server-1")
    await redis_client.sadd("user:alice:connections", "not-json")

    connections = await registry.list_connections("alice")
    assert [conn.connection_id for conn in connections] == ["c1"]


@pytest.mark.asyncio
async def test_store_outage_is_not_treated_as_absent():
    redis_client = MagicMock()
    redis_client.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    redis_client.scard = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    registry = ConnectionRegistry(RedisStore(redis_client))

    with pytest.raises(StoreUnavailableError):
        await registry.resolve_user("c1")
    with pytest.raises(StoreUnavailableError):
        await registry.exists("alice")


@pytest.mark.asyncio
async def test_register_returns_previous_owner(registry):
    assert await registry.register("u1", "c", "p") is None
    assert await registry.register("u2", "c", "p") == "u1"
    assert await registry.register("u2", "c", "p") == "u2"


@pytest.mark.asyncio
async def test_concurrent_rebinding_leaves_a_single_owner(registry):
    await asyncio.gather(
        registry.register("u1", "c", "p"),
        registry.register("u2", "c", "p"),
        registry.register("u3", "c", "p"),
    )

    owner = await registry.resolve_user("c")
    holders = [
        user_id
        for user_id in ("u1", "u2", "u3")
        if "c" in [conn.connection_id for conn in await registry.list_connections(user_id)]
    ]
    assert holders == [owner]


@pytest.mark.asyncio
async def test_connected_users_lists_users_with_live_connections(registry):
    await registry.register("alice", "c1", "server-1")
    await registry.register("bob", "c2", "server-2")
    await registry.register("carol", "c3", "server-1")
    await registry.unregister("carol", "c3")

    assert await registry.connected_users() == ["alice", "bob"]
