# MediaHub
# SPDX-License-Identifier: GPL-3.0-or-later

"""
ControlSurface — a client's local mirror of the coordinator's sessions.

The mirror is fed by SESSIONS_INIT, then SESSION_UPDATED / SESSION_REMOVED.
Two local overrides sit on top of the authoritative state:

  Optimistic toggle   toggling flips ``paused`` locally at once and records
                      ``{session_id: (assumed_paused, expiry)}``.  Broadcasts
                      arriving before the expiry get ``paused`` overridden;
                      after it the entry is dropped and the coordinator wins.

  Drag-to-seek        begin_drag sends beginSeek; while dragging, the rendered
                      position comes only from the pointer (other fields still
                      update).  end_drag sends setTime then endSeek, in order.

Commands go out through ``send(session_id, verb, args)`` and are
fire-and-forget: their effect is only ever observed via later broadcasts.
"""

import logging
import math
import time
from urllib.parse import urlparse

from ..lib.protocol import SESSION_REMOVED, SESSION_UPDATED, SESSIONS_INIT, clamp

log = logging.getLogger(__name__)

OPTIMISTIC_WINDOW = 1.0


def format_time(seconds) -> str:
    """Seconds as ``m:ss``; ``0:00`` for unknown or non-finite values."""
    if not seconds or not isinstance(seconds, (int, float)) or not math.isfinite(seconds):
        return "0:00"
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def site_name(url) -> str:
    try:
        host = urlparse(url or "").hostname
    except ValueError:
        host = None
    if not host:
        return "Unknown site"
    return host[4:] if host.startswith("www.") else host


class ControlSurface:
    def __init__(self, send, *, optimistic_window: float = OPTIMISTIC_WINDOW,
                 clock=time.monotonic):
        self.send = send
        self.optimistic_window = optimistic_window
        self._clock = clock
        self.sessions: dict[str, dict] = {}
        self.assumed: dict[str, tuple[bool, float]] = {}
        self.dragging: dict[str, float] = {}

    # ── Inbound ──

    def apply(self, message: dict) -> bool:
        """Fold one coordinator message into the mirror.  True if it was understood."""
        msg_type = message.get("type")
        if msg_type == SESSIONS_INIT:
            self.sessions = {}
            for session in message.get("sessions") or []:
                self._merge(session)
        elif msg_type == SESSION_UPDATED:
            self._merge(message.get("session") or {})
        elif msg_type == SESSION_REMOVED:
            sid = message.get("sessionId")
            self.sessions.pop(sid, None)
            self.assumed.pop(sid, None)
            self.dragging.pop(sid, None)
        else:
            log.debug("Ignoring %s", msg_type)
            return False
        return True

    def _merge(self, session: dict):
        sid = session.get("id")
        if not sid or not isinstance(session.get("state"), dict):
            log.warning("Dropping malformed session from coordinator: %r", session)
            return
        session = dict(session, state=dict(session["state"]))
        override = self.assumed.get(sid)
        if override is not None:
            paused, expiry = override
            if self._clock() < expiry:
                session["state"]["paused"] = paused
            else:
                del self.assumed[sid]
        self.sessions[sid] = session

    # ── Views ──

    def ordered(self) -> list[dict]:
        """Playing sessions first, then most recently active."""
        return sorted(
            self.sessions.values(),
            key=lambda s: (bool(s["state"].get("paused")), -(s.get("lastActiveAt") or 0)),
        )

    def position(self, sid: str) -> float:
        """Rendered playback position: the pointer while dragging, else the state."""
        if sid in self.dragging:
            return self.dragging[sid]
        session = self.sessions.get(sid)
        return session["state"].get("currentTime", 0) if session else 0

    def render(self, sid: str) -> str:
        session = self.sessions[sid]
        state = session["state"]
        icon = "||" if state.get("paused") else "> "
        volume = "muted" if state.get("muted") else f"vol {round(state.get('volume', 1) * 100)}%"
        return (f"{icon} {session.get('title') or 'Unknown'} — {site_name(session.get('siteUrl'))}  "
                f"{format_time(self.position(sid))} / {format_time(state.get('duration'))}  {volume}")

    # ── Commands ──

    async def _send(self, sid: str, verb: str, args: dict | None = None):
        log.debug("Command %s -> %s %s", verb, sid, args or {})
        await self.send(sid, verb, args or {})

    async def toggle(self, sid: str):
        session = self.sessions.get(sid)
        if session is None:
            return
        paused = not session["state"].get("paused", True)
        session["state"]["paused"] = paused
        self.assumed[sid] = (paused, self._clock() + self.optimistic_window)
        await self._send(sid, "toggle")

    async def seek(self, sid: str, delta: float):
        await self._send(sid, "seek", {"delta": delta})

    async def set_time(self, sid: str, seconds: float):
        """Click-to-seek: a single setTime, no suppression."""
        await self._send(sid, "setTime", {"time": seconds})

    async def set_volume(self, sid: str, volume: float):
        volume = clamp(float(volume), 0.0, 1.0)
        session = self.sessions.get(sid)
        if session is not None:
            session["state"]["volume"] = volume
        await self._send(sid, "setVolume", {"volume": volume})

    async def mute(self, sid: str, muted: bool | None = None):
        """Set mute; None lets the agent toggle."""
        await self._send(sid, "mute", {} if muted is None else {"muted": bool(muted)})

    async def previous_track(self, sid: str):
        await self._send(sid, "previousTrack")

    async def next_track(self, sid: str):
        await self._send(sid, "nextTrack")

    # ── Drag-to-seek ──

    def can_drag(self, sid: str) -> bool:
        session = self.sessions.get(sid)
        if session is None:
            return False
        state = session["state"]
        duration = state.get("duration")
        return bool(state.get("canSeek")) and bool(duration) and duration > 0

    def position_at(self, sid: str, fraction: float) -> float:
        """Seconds under a pointer at *fraction* of the progress bar."""
        duration = self.sessions[sid]["state"].get("duration") or 0
        return clamp(float(fraction), 0.0, 1.0) * duration

    async def begin_drag(self, sid: str, fraction: float) -> bool:
        if not self.can_drag(sid):
            log.debug("Drag refused on %s: not seekable", sid)
            return False
        self.dragging[sid] = self.position_at(sid, fraction)
        await self._send(sid, "beginSeek")
        return True

    def drag_to(self, sid: str, fraction: float):
        if sid in self.dragging and sid in self.sessions:
            self.dragging[sid] = self.position_at(sid, fraction)

    async def end_drag(self, sid: str, fraction: float | None = None) -> bool:
        if sid not in self.dragging:
            return False
        if fraction is not None and sid in self.sessions:
            self.drag_to(sid, fraction)
        target = self.dragging.pop(sid)
        session = self.sessions.get(sid)
        if session is not None:
            session["state"]["currentTime"] = target
        await self._send(sid, "setTime", {"time": target})
        await self._send(sid, "endSeek")
        return True
