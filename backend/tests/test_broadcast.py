"""Tests for BroadcastEngine persistence and fan-out."""
import json

import pytest

from roomrelay.chat.broadcast import BroadcastEngine
from roomrelay.chat.registry import RoomRegistry
from roomrelay.chat.store import MessageStore


@pytest.fixture
def store(store_path):
    s = MessageStore(store_path)
    s.load()
    return s


def make_engine(store, channel_factory, echo_to_sender=True, rooms=None):
    registry = RoomRegistry()
    engine = BroadcastEngine(store, registry, echo_to_sender=echo_to_sender)
    channels = {}
    for cid, room_id in (rooms or {}).items():
        channels[cid] = channel_factory()
        registry.connect(cid, channels[cid])
        registry.join(cid, room_id, cid)
    return engine, channels


@pytest.mark.asyncio
async def test_message_reaches_all_members_including_sender(store, channel_factory):
    engine, ch = make_engine(store, channel_factory, rooms={"a": "lobby", "b": "lobby"})

    await engine.handle_message("lobby", "a", "hi", sender_id="a")

    expected = {"type": "message", "room": "lobby", "username": "a", "msg": "hi"}
    assert ch["a"].sent == [expected]
    assert ch["b"].sent == [expected]


@pytest.mark.asyncio
async def test_sender_excluded_when_echo_disabled(store, channel_factory):
    engine, ch = make_engine(
        store, channel_factory, echo_to_sender=False, rooms={"a": "lobby", "b": "lobby"}
    )

    await engine.handle_message("lobby", "a", "hi", sender_id="a")

    assert ch["a"].sent == []
    assert len(ch["b"].sent) == 1


@pytest.mark.asyncio
async def test_other_rooms_are_isolated(store, channel_factory):
    engine, ch = make_engine(store, channel_factory, rooms={"a": "lobby", "b": "dev"})

    await engine.handle_message("lobby", "a", "only lobby", sender_id="a")

    assert ch["b"].sent == []
    assert store.history("dev") == []


@pytest.mark.asyncio
async def test_message_is_persisted_before_fan_out(store, store_path, channel_factory):
    engine, ch = make_engine(store, channel_factory, rooms={"a": "lobby"})
    on_disk_at_send = []

    original = ch["a"].send_json

    async def spy(payload):
        on_disk_at_send.append(json.loads(store_path.read_text())["lobby"])
        await original(payload)

    ch["a"].send_json = spy

    await engine.handle_message("lobby", "a", "hi", sender_id="a")

    assert on_disk_at_send == [[{"username": "a", "msg": "hi"}]]


@pytest.mark.asyncio
async def test_message_to_room_without_members_is_still_stored(store, channel_factory):
    engine, _ = make_engine(store, channel_factory)

    message = await engine.handle_message("empty-room", "", "")

    assert message.username == ""
    assert store.history("empty-room") == [message]


@pytest.mark.asyncio
async def test_within_room_order_preserved(store, channel_factory):
    engine, ch = make_engine(store, channel_factory, rooms={"a": "lobby", "b": "lobby"})

    for i in range(5):
        await engine.handle_message("lobby", "a", f"m{i}", sender_id="a")

    assert [p["msg"] for p in ch["b"].sent] == [f"m{i}" for i in range(5)]
    assert [m.msg for m in store.history("lobby")] == [f"m{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_dead_connection_is_removed_from_room(store, channel_factory, broken_channel):
    engine, ch = make_engine(store, channel_factory, rooms={"a": "lobby"})
    engine.registry.connect("dead", broken_channel)
    engine.registry.join("dead", "lobby")

    await engine.handle_message("lobby", "a", "hi", sender_id="a")

    assert len(ch["a"].sent) == 1
    assert engine.registry.members("lobby") == {"a"}


@pytest.mark.asyncio
async def test_send_to_unknown_connection(store, channel_factory):
    engine, _ = make_engine(store, channel_factory)
    assert await engine.send_to("nobody", {"type": "x"}) is False
