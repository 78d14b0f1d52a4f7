"""
Wire protocol shared by the coordinator, the agents and the control surfaces.

Every message is a JSON object with a ``type`` field.  Playback state travels
as the dict produced by ``normalize_state`` (camelCase keys, same shape on
every hop), so the coordinator and surfaces never need to know whether a
session is backed by a real media element or a UI-automation virtual source.
"""

import math

# ── Agent <-> coordinator ──
SESSION_UPDATE = "SESSION_UPDATE"
SESSION_REMOVE = "SESSION_REMOVE"
MEDIA_CONTROL = "MEDIA_CONTROL"
ACK = "ACK"

# ── Surface <-> coordinator ──
GET_SESSIONS = "GET_SESSIONS"
CONTROL_COMMAND = "CONTROL_COMMAND"
SHORTCUT = "SHORTCUT"
SESSIONS_INIT = "SESSIONS_INIT"
SESSION_UPDATED = "SESSION_UPDATED"
SESSION_REMOVED = "SESSION_REMOVED"

VERBS = frozenset({
    "toggle", "seek", "setTime", "setVolume", "mute",
    "previousTrack", "nextTrack", "beginSeek", "endSeek",
})

SHORTCUTS = frozenset({"toggle-play", "seek-forward", "seek-backward"})


class MalformedSnapshot(ValueError):
    """A snapshot is missing required fields; the previous state is kept."""


class AutomationFailure(Exception):
    """A UI-automation step could not be carried out on the page."""


class DeliveryFailure(Exception):
    """A command could not reach its context (closed channel, timeout)."""


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _number(value) -> float | None:
    """Return *value* as a finite float, or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def normalize_state(raw) -> dict:
    """Validate and normalize a playback-state dict.

    Raises MalformedSnapshot if *raw* is not a dict or lacks ``paused``.
    Unknown, non-finite or non-positive durations become None.  currentTime
    is clamped to [0, duration] when the duration is known, volume to [0, 1].
    """
    if not isinstance(raw, dict):
        raise MalformedSnapshot("state must be an object")
    if "paused" not in raw:
        raise MalformedSnapshot("state.paused is required")

    duration = _number(raw.get("duration"))
    if duration is not None and duration <= 0:
        duration = None

    current = _number(raw.get("currentTime")) or 0.0
    current = max(0.0, current)
    if duration is not None:
        current = min(current, duration)

    volume = _number(raw.get("volume"))
    volume = 1.0 if volume is None else clamp(volume, 0.0, 1.0)

    return {
        "paused": bool(raw["paused"]),
        "muted": bool(raw.get("muted", False)),
        "volume": volume,
        "currentTime": current,
        "duration": duration,
        "canSeek": bool(raw.get("canSeek", False)),
        "ended": bool(raw.get("ended", False)),
    }


def session_id(group_id, context_id) -> str:
    """Render the composite (contextGroupId, contextId) key."""
    return f"{group_id}:{context_id}"
