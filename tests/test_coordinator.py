import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeClock
from mediahub.coordinator import (
    Coordinator, SessionRegistry, SurfaceSubscriber, create_app,
)
from mediahub.lib.protocol import (
    ACK, CONTROL_COMMAND, GET_SESSIONS, MEDIA_CONTROL, SESSION_REMOVE, SESSION_REMOVED,
    SESSION_UPDATE, SESSION_UPDATED, SESSIONS_INIT, MalformedSnapshot,
)


def _data(paused: bool = True, **state) -> dict:
    return {"title": "Video", "siteUrl": "https://example.com/", "state": {"paused": paused, **state}}


def _registry(throttle: float = 0.3):
    clock, wall = FakeClock(), FakeClock()
    return SessionRegistry(throttle, clock, wall), clock, wall


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
def test_last_active_moves_only_when_playback_starts() -> None:
    registry, _, wall = _registry()
    session, _ = registry.upsert("tab1", "0", _data(paused=True))
    assert session.last_active_at == 1000
    assert registry.active_id is None

    wall.advance(5)
    session, _ = registry.upsert("tab1", "0", _data(paused=True))
    assert session.last_active_at == 1000

    wall.advance(5)
    session, _ = registry.upsert("tab1", "0", _data(paused=False))
    assert session.last_active_at == 1010
    assert registry.active_id == "tab1:0"

    wall.advance(5)
    session, _ = registry.upsert("tab1", "0", _data(paused=False))
    assert session.last_active_at == 1010


def test_last_active_never_decreases_when_clock_steps_back() -> None:
    registry, _, wall = _registry()
    registry.upsert("tab1", "0", _data(paused=False))
    registry.upsert("tab1", "0", _data(paused=True))
    wall.now = 900
    session, _ = registry.upsert("tab1", "0", _data(paused=False))
    assert session.last_active_at == 1000


def test_new_playing_session_becomes_active() -> None:
    registry, _, wall = _registry()
    registry.upsert("tab1", "0", _data(paused=False))
    wall.advance(1)
    registry.upsert("tab2", "0", _data(paused=False))
    assert registry.active_id == "tab2:0"
    wall.advance(1)
    registry.upsert("tab3", "0", _data(paused=True))
    assert registry.active_id == "tab2:0"


def test_broadcast_throttle() -> None:
    registry, clock, _ = _registry()
    assert registry.upsert("tab1", "0", _data(currentTime=1))[1] is True
    clock.advance(0.1)
    session, broadcast = registry.upsert("tab1", "0", _data(currentTime=2))
    assert broadcast is False
    assert registry.get("tab1:0").state["currentTime"] == 2

    clock.advance(0.25)
    assert registry.upsert("tab1", "0", _data(currentTime=3))[1] is True
    clock.advance(0.05)
    assert registry.upsert("tab1", "0", _data(paused=False, currentTime=3))[1] is True


def test_stored_time_is_clamped_to_duration() -> None:
    registry, _, _ = _registry()
    session, _ = registry.upsert("tab1", "0", _data(currentTime=99, duration=30))
    assert session.state["currentTime"] == 30


def test_malformed_snapshot_keeps_previous_state() -> None:
    registry, _, _ = _registry()
    registry.upsert("tab1", "0", _data(currentTime=5))
    with pytest.raises(MalformedSnapshot):
        registry.upsert("tab1", "0", {"state": {"currentTime": 9}})
    assert registry.get("tab1:0").state["currentTime"] == 5


def test_title_falls_back_to_previous_then_site() -> None:
    registry, _, _ = _registry()
    session, _ = registry.upsert("tab1", "0", {"siteUrl": "https://a.test/", "state": {"paused": True}})
    assert session.title == "https://a.test/"
    registry.upsert("tab1", "0", _data())
    session, _ = registry.upsert("tab1", "0", {"state": {"paused": True}})
    assert session.title == "Video"


def test_removing_active_reassigns_to_most_recent() -> None:
    registry, _, wall = _registry()
    registry.upsert("tab1", "0", _data(paused=False))
    wall.advance(10)
    registry.upsert("tab2", "0", _data(paused=False))
    wall.advance(10)
    registry.upsert("tab3", "0", _data(paused=False))

    registry.remove("tab3:0")
    assert registry.active_id == "tab2:0"
    registry.remove("tab1:0")
    assert registry.active_id == "tab2:0"
    registry.remove("tab2:0")
    assert registry.active_id is None
    assert registry.remove("tab2:0") is None


# ---------------------------------------------------------------------------
# Coordinator (transport-free)
# ---------------------------------------------------------------------------
class Sink:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def __call__(self, message: dict) -> None:
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


def _coordinator(**kwargs) -> Coordinator:
    options = {"throttle_ms": 300, "ack_timeout": 0.05, "seek_step": 10,
               "clock": FakeClock(), "wall_clock": FakeClock()}
    options.update(kwargs)
    return Coordinator(**options)


def _agent(coordinator: Coordinator, group: str = "tab1", reply=True):
    """Open a channel whose agent answers every request with *reply*."""
    sent: list[dict] = []
    holder = {}

    async def send(message: dict) -> None:
        sent.append(message)
        if reply is not None:
            holder["channel"].resolve(message["id"], reply)

    holder["channel"] = coordinator.open_channel(group, send)
    return holder["channel"], sent


def test_forward_command_routes_to_owning_context() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        channel, sent = _agent(coordinator)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0.1", "data": _data()})

        assert await coordinator.forward_command("tab1:0.1", "setVolume", {"volume": 0.5}) is True
        [message] = sent
        assert message["type"] == MEDIA_CONTROL
        assert message["contextId"] == "0.1"
        assert message["verb"] == "setVolume"
        assert message["args"] == {"volume": 0.5}

    asyncio.run(_run())


def test_ack_timeout_removes_session() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        sink = Sink()
        subscriber = SurfaceSubscriber(sink)
        coordinator.subscribe(subscriber)
        channel, _ = _agent(coordinator, reply=None)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data()})

        assert await coordinator.forward_command("tab1:0", "toggle") is False
        assert "tab1:0" not in coordinator.registry
        await subscriber.drain()
        assert sink.types() == [SESSIONS_INIT, SESSION_UPDATED, SESSION_REMOVED]
        await subscriber.close()

    asyncio.run(_run())


def test_send_failure_removes_session() -> None:
    async def _run() -> None:
        coordinator = _coordinator()

        async def broken(message: dict) -> None:
            raise ConnectionResetError("gone")

        channel = coordinator.open_channel("tab1", broken)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data()})
        assert await coordinator.forward_command("tab1:0", "toggle") is False
        assert len(coordinator.registry) == 0

    asyncio.run(_run())


def test_negative_ack_keeps_session() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        channel, _ = _agent(coordinator, reply=False)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data()})
        assert await coordinator.forward_command("tab1:0", "toggle") is False
        assert "tab1:0" in coordinator.registry

    asyncio.run(_run())


def test_unknown_session_and_verb_are_ignored() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        channel, sent = _agent(coordinator)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data()})
        assert await coordinator.forward_command("tab9:0", "toggle") is False
        assert await coordinator.forward_command("tab1:0", "explode") is False
        assert sent == []
        assert "tab1:0" in coordinator.registry

    asyncio.run(_run())


def test_shortcuts_target_active_session() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        channel, sent = _agent(coordinator)
        assert await coordinator.shortcut("toggle-play") is False

        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data(paused=False)})
        assert await coordinator.shortcut("seek-forward") is True
        assert await coordinator.shortcut("seek-backward") is True
        assert await coordinator.shortcut("toggle-play") is True
        assert await coordinator.shortcut("bogus") is False
        assert [(m["verb"], m["args"]) for m in sent] == [
            ("seek", {"delta": 10}), ("seek", {"delta": -10}), ("toggle", {}),
        ]

    asyncio.run(_run())


def test_closing_channel_removes_only_its_group() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        one, _ = _agent(coordinator, "tab1")
        two, _ = _agent(coordinator, "tab2")
        for channel in (one, two):
            for ctx in ("0", "0.1"):
                coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": ctx, "data": _data()})

        coordinator.close_channel(one)
        assert sorted(s.id for s in coordinator.registry.sessions.values()) == ["tab2:0", "tab2:0.1"]
        assert "tab1" not in coordinator.channels

    asyncio.run(_run())


def test_session_remove_message_and_throttled_fanout() -> None:
    async def _run() -> None:
        clock = FakeClock()
        coordinator = _coordinator(clock=clock)
        sink = Sink()
        subscriber = SurfaceSubscriber(sink)
        coordinator.subscribe(subscriber)
        channel, _ = _agent(coordinator)

        for t in (1, 2, 3):
            coordinator.handle_agent_message(
                channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data(currentTime=t)})
            clock.advance(0.1)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": {"nope": 1}})
        coordinator.handle_agent_message(channel, {"type": SESSION_REMOVE, "contextId": "0"})
        await subscriber.drain()

        assert sink.types() == [SESSIONS_INIT, SESSION_UPDATED, SESSION_REMOVED]
        assert sink.messages[2]["sessionId"] == "tab1:0"
        await subscriber.close()

    asyncio.run(_run())


def test_late_ack_is_ignored() -> None:
    async def _run() -> None:
        coordinator = _coordinator()
        channel, _ = _agent(coordinator, reply=None)
        coordinator.handle_agent_message(channel, {"type": ACK, "id": "tab1-99", "success": True})
        assert coordinator.channels["tab1"] is channel

    asyncio.run(_run())


# ---------------------------------------------------------------------------
# HTTP / WebSocket surface
# ---------------------------------------------------------------------------
def test_http_and_websocket_round_trip() -> None:
    async def _run() -> None:
        coordinator = Coordinator(throttle_ms=0, ack_timeout=1.0, seek_step=10)
        async with TestClient(TestServer(create_app(coordinator))) as client:
            agent = await client.ws_connect("/agent?group=tab1")
            surface = await client.ws_connect("/ws")
            init = await surface.receive_json(timeout=2)
            assert init == {"type": SESSIONS_INIT, "sessions": []}

            await agent.send_json({"type": SESSION_UPDATE, "contextId": "0", "data": _data(paused=False)})
            update = await surface.receive_json(timeout=2)
            assert update["type"] == SESSION_UPDATED
            assert update["session"]["id"] == "tab1:0"
            assert update["session"]["contextGroupId"] == "tab1"

            resp = await client.get("/sessions")
            body = await resp.json()
            assert [s["id"] for s in body["sessions"]] == ["tab1:0"]
            assert body["activeSessionId"] == "tab1:0"

            async def answer() -> dict:
                request = await agent.receive_json(timeout=2)
                await agent.send_json({"type": ACK, "id": request["id"], "success": True})
                return request

            responder = asyncio.create_task(answer())
            resp = await client.post("/command", json={"sessionId": "tab1:0", "verb": "seek", "args": {"delta": 10}})
            assert (await resp.json()) == {"status": "ok", "delivered": True}
            request = await responder
            assert request["type"] == MEDIA_CONTROL and request["args"] == {"delta": 10}

            resp = await client.get("/status")
            status = await resp.json()
            assert status["sessions"] == 1
            assert status["agent_groups"] == ["tab1"]
            assert status["surfaces"] == 1

            await agent.close()
            removed = await surface.receive_json(timeout=2)
            assert removed == {"type": SESSION_REMOVED, "sessionId": "tab1:0"}
            await surface.close()

    asyncio.run(_run())


def test_http_validation_errors() -> None:
    async def _run() -> None:
        coordinator = Coordinator(throttle_ms=0, ack_timeout=0.1, seek_step=10)
        async with TestClient(TestServer(create_app(coordinator))) as client:
            resp = await client.post("/command", data="not json")
            assert resp.status == 400
            resp = await client.post("/command", json={"sessionId": "x:0", "verb": "launch"})
            assert resp.status == 400
            resp = await client.post("/command", json={"sessionId": "x:0", "verb": "toggle"})
            assert resp.status == 404
            resp = await client.post("/shortcut", json={"command": "rewind"})
            assert resp.status == 400
            resp = await client.post("/shortcut", json={"command": "toggle-play"})
            assert (await resp.json())["delivered"] is False
            resp = await client.delete("/sessions/x:0")
            assert resp.status == 404
            resp = await client.get("/agent")
            assert resp.status == 400
            resp = await client.get("/sessions")
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

    asyncio.run(_run())


def test_delete_session_over_http() -> None:
    async def _run() -> None:
        coordinator = Coordinator(throttle_ms=0, ack_timeout=0.1, seek_step=10)
        channel, _ = _agent(coordinator)
        coordinator.handle_agent_message(channel, {"type": SESSION_UPDATE, "contextId": "0", "data": _data()})
        async with TestClient(TestServer(create_app(coordinator))) as client:
            resp = await client.delete("/sessions/tab1:0")
            assert resp.status == 200
            assert len(coordinator.registry) == 0

    asyncio.run(_run())


def test_malformed_surface_command_is_dropped() -> None:
    async def _run() -> None:
        coordinator = Coordinator(throttle_ms=0, ack_timeout=0.1, seek_step=10)
        async with TestClient(TestServer(create_app(coordinator))) as client:
            surface = await client.ws_connect("/ws")
            assert (await surface.receive_json(timeout=2))["type"] == SESSIONS_INIT

            await surface.send_json({"type": CONTROL_COMMAND, "data": "toggle"})
            await surface.send_json({"type": CONTROL_COMMAND, "data": ["tab1:0", "toggle"]})
            await surface.send_json({"type": GET_SESSIONS})
            reply = await surface.receive_json(timeout=2)
            assert reply == {"type": SESSIONS_INIT, "sessions": []}
            assert len(coordinator.subscribers) == 1
            await surface.close()

    asyncio.run(_run())
