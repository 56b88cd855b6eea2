"""Tests for ConnectionSession event handling."""
import pytest

from roomrelay.chat.broadcast import BroadcastEngine
from roomrelay.chat.registry import RoomRegistry
from roomrelay.chat.schemas import Message
from roomrelay.chat.session import ConnectionSession, MalformedEventError
from roomrelay.chat.store import MessageStore


@pytest.fixture
def engine(store_path):
    store = MessageStore(store_path)
    store.load()
    return BroadcastEngine(store, RoomRegistry())


async def open_session(engine, channel_factory, connection_id):
    session = ConnectionSession(connection_id, channel_factory(), engine)
    await session.open()
    return session


@pytest.mark.asyncio
async def test_open_announces_connection_id(engine, channel_factory):
    session = await open_session(engine, channel_factory, "c1")

    assert session.channel.sent == [{"type": "connected", "connectionId": "c1"}]
    assert session.room_id is None


@pytest.mark.asyncio
async def test_join_replays_history_to_joiner_only(engine, channel_factory):
    engine.store.append("lobby", Message(username="old", msg="m1"))
    engine.store.append("lobby", Message(username="old", msg="m2"))
    a = await open_session(engine, channel_factory, "a")
    b = await open_session(engine, channel_factory, "b")
    await a.on_join("lobby", "ana")

    await b.on_join("lobby", "bo")

    assert b.channel.of_type("loadMessages") == [{
        "type": "loadMessages",
        "room": "lobby",
        "messages": [{"username": "old", "msg": "m1"}, {"username": "old", "msg": "m2"}],
    }]
    assert len(a.channel.of_type("loadMessages")) == 1


@pytest.mark.asyncio
async def test_lobby_scenario(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")
    b = await open_session(engine, channel_factory, "b")

    await a.dispatch({"type": "joinRoom", "room": "lobby", "username": "A"})
    await b.dispatch({"type": "joinRoom", "room": "lobby", "username": "B"})
    assert a.channel.of_type("loadMessages")[0]["messages"] == []
    assert b.channel.of_type("loadMessages")[0]["messages"] == []

    await a.dispatch({"type": "message", "room": "lobby", "msg": "hi"})

    assert b.channel.of_type("message") == [
        {"type": "message", "room": "lobby", "username": "A", "msg": "hi"}
    ]
    assert len(engine.store.history("lobby")) == 1


@pytest.mark.asyncio
async def test_message_defaults_to_joined_room(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")
    await a.on_join("dev", "ana")

    message = await a.on_message("no room given")

    assert message == Message(username="ana", msg="no room given")
    assert engine.store.message_count("dev") == 1


@pytest.mark.asyncio
async def test_explicit_username_overrides_display_name(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")
    await a.on_join("dev", "ana")

    await a.dispatch({"type": "message", "username": "", "msg": "anon"})

    assert engine.store.history("dev") == [Message(username="", msg="anon")]


@pytest.mark.asyncio
async def test_message_without_room_when_unjoined_is_rejected(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")

    with pytest.raises(MalformedEventError):
        await a.on_message("hello")

    await a.dispatch({"type": "message", "msg": "hello"})
    assert a.channel.of_type("error")[0]["error"] == "room is required when not joined to a room"
    assert engine.store.rooms() == []


@pytest.mark.asyncio
async def test_unjoined_sender_can_post_to_named_room(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")
    b = await open_session(engine, channel_factory, "b")
    await b.on_join("lobby")

    await a.dispatch({"type": "message", "room": "lobby", "username": "drive-by", "msg": "yo"})

    assert b.channel.of_type("message")[0]["username"] == "drive-by"
    assert a.channel.of_type("message") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("payload, fragment", [
    (["not", "an", "object"], "JSON object"),
    ({"type": "dance"}, "unknown event type"),
    ({"msg": "no type"}, "unknown event type"),
    ({"type": "joinRoom"}, "invalid joinRoom event"),
    ({"type": "joinRoom", "room": ""}, "invalid joinRoom event"),
    ({"type": "joinRoom", "room": 7}, "invalid joinRoom event"),
    ({"type": "message", "room": "lobby"}, "invalid message event"),
    ({"type": "message", "room": "lobby", "msg": ["x"]}, "invalid message event"),
])
async def test_malformed_events_get_error_frame(engine, channel_factory, payload, fragment):
    a = await open_session(engine, channel_factory, "a")

    await a.dispatch(payload)

    errors = a.channel.of_type("error")
    assert len(errors) == 1
    assert fragment in errors[0]["error"]
    assert engine.store.rooms() == []


@pytest.mark.asyncio
async def test_disconnect_leaves_room_and_keeps_history(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")
    await a.on_join("lobby", "ana")
    await a.on_message("bye")

    a.on_disconnect()

    assert engine.registry.members("lobby") == set()
    assert engine.registry.session("a") is None
    assert engine.store.message_count("lobby") == 1


@pytest.mark.asyncio
async def test_join_after_dead_connection_cleanup(engine, channel_factory):
    a = await open_session(engine, channel_factory, "a")
    engine.registry.disconnect("a")

    await a.on_join("lobby")

    assert engine.registry.members("lobby") == {"a"}
