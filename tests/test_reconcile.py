import asyncio

import pytest

from fakes import FakeClock, Recorder
from mediahub.lib.protocol import SESSION_REMOVED, SESSION_UPDATED, SESSIONS_INIT
from mediahub.surface.reconcile import ControlSurface, format_time, site_name


def _session(sid: str, paused: bool = True, last: float = 0, **state) -> dict:
    base = {"paused": paused, "muted": False, "volume": 1.0, "currentTime": 10,
            "duration": 100, "canSeek": True, "ended": False}
    base.update(state)
    return {"id": sid, "title": sid, "siteUrl": "https://www.example.com/x",
            "state": base, "lastActiveAt": last}


def _surface(*sessions) -> tuple[ControlSurface, Recorder, FakeClock]:
    send, clock = Recorder(), FakeClock()
    surface = ControlSurface(send, optimistic_window=1.0, clock=clock)
    surface.apply({"type": SESSIONS_INIT, "sessions": list(sessions)})
    return surface, send, clock


@pytest.mark.parametrize("seconds, text", [
    (0, "0:00"), (None, "0:00"), (float("inf"), "0:00"), (float("nan"), "0:00"),
    (5, "0:05"), (83.9, "1:23"), (3723, "62:03"),
])
def test_format_time(seconds, text) -> None:
    assert format_time(seconds) == text


def test_site_name() -> None:
    assert site_name("https://www.youtube.com/watch?v=1") == "youtube.com"
    assert site_name("https://open.spotify.com/") == "open.spotify.com"
    assert site_name("not a url") == "Unknown site"
    assert site_name(None) == "Unknown site"


def test_ordering_playing_first_then_recent() -> None:
    surface, _, _ = _surface(
        _session("old", last=1), _session("new", last=5), _session("live", paused=False, last=0))
    assert [s["id"] for s in surface.ordered()] == ["live", "new", "old"]


def test_optimistic_toggle_survives_contradiction_inside_window() -> None:
    async def _run() -> None:
        surface, send, clock = _surface(_session("a", paused=True))
        await surface.toggle("a")
        assert surface.sessions["a"]["state"]["paused"] is False
        assert send.calls == [("a", "toggle", {})]

        clock.advance(0.999)
        surface.apply({"type": SESSION_UPDATED, "session": _session("a", paused=True, currentTime=11)})
        assert surface.sessions["a"]["state"]["paused"] is False
        assert surface.sessions["a"]["state"]["currentTime"] == 11

    asyncio.run(_run())


def test_optimistic_override_expires() -> None:
    async def _run() -> None:
        surface, _, clock = _surface(_session("a", paused=True))
        await surface.toggle("a")
        clock.advance(1.0)
        surface.apply({"type": SESSION_UPDATED, "session": _session("a", paused=True)})
        assert surface.sessions["a"]["state"]["paused"] is True
        assert "a" not in surface.assumed

    asyncio.run(_run())


def test_drag_holds_position_and_ends_with_set_time_then_end_seek() -> None:
    async def _run() -> None:
        surface, send, _ = _surface(_session("a", currentTime=10, duration=200))
        assert await surface.begin_drag("a", 0.25) is True
        assert surface.position("a") == 50

        surface.drag_to("a", 0.5)
        surface.apply({"type": SESSION_UPDATED,
                       "session": _session("a", currentTime=12, duration=200, volume=0.5)})
        assert surface.position("a") == 100
        assert surface.sessions["a"]["state"]["volume"] == 0.5

        assert await surface.end_drag("a", 0.75) is True
        assert send.calls == [
            ("a", "beginSeek", {}),
            ("a", "setTime", {"time": 150}),
            ("a", "endSeek", {}),
        ]
        assert surface.position("a") == 150
        assert "a" not in surface.dragging

    asyncio.run(_run())


def test_drag_refused_without_seek_support() -> None:
    async def _run() -> None:
        surface, send, _ = _surface(
            _session("live", canSeek=False), _session("stream", duration=None))
        assert await surface.begin_drag("live", 0.5) is False
        assert await surface.begin_drag("stream", 0.5) is False
        assert await surface.end_drag("live") is False
        assert send.calls == []

    asyncio.run(_run())


def test_other_commands() -> None:
    async def _run() -> None:
        surface, send, _ = _surface(_session("a"))
        await surface.seek("a", -10)
        await surface.set_time("a", 42)
        await surface.set_volume("a", 1.7)
        await surface.mute("a")
        await surface.mute("a", True)
        await surface.next_track("a")
        await surface.previous_track("a")
        assert send.calls == [
            ("a", "seek", {"delta": -10}),
            ("a", "setTime", {"time": 42}),
            ("a", "setVolume", {"volume": 1.0}),
            ("a", "mute", {}),
            ("a", "mute", {"muted": True}),
            ("a", "nextTrack", {}),
            ("a", "previousTrack", {}),
        ]

    asyncio.run(_run())


def test_removal_clears_local_overrides() -> None:
    async def _run() -> None:
        surface, _, _ = _surface(_session("a"))
        await surface.toggle("a")
        await surface.begin_drag("a", 0.1)
        surface.apply({"type": SESSION_REMOVED, "sessionId": "a"})
        assert surface.sessions == {} and surface.assumed == {} and surface.dragging == {}

    asyncio.run(_run())


def test_render_line() -> None:
    surface, _, _ = _surface(_session("a", paused=False, currentTime=83, duration=180, volume=0.5))
    line = surface.render("a")
    assert "example.com" in line
    assert "1:23 / 3:00" in line
    assert "vol 50%" in line
