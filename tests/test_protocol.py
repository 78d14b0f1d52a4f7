import math

import pytest

from mediahub.lib.protocol import (
    MalformedSnapshot, normalize_state, session_id,
)


def test_current_time_clamped_to_known_duration() -> None:
    state = normalize_state({"paused": False, "currentTime": 500, "duration": 120})
    assert state["currentTime"] == 120
    state = normalize_state({"paused": False, "currentTime": -3, "duration": 120})
    assert state["currentTime"] == 0


@pytest.mark.parametrize("duration", [None, 0, -5, math.inf, math.nan, "abc"])
def test_unknown_duration_becomes_none(duration) -> None:
    state = normalize_state({"paused": True, "currentTime": 42, "duration": duration})
    assert state["duration"] is None
    assert state["currentTime"] == 42


def test_volume_defaults_and_clamps() -> None:
    assert normalize_state({"paused": True})["volume"] == 1.0
    assert normalize_state({"paused": True, "volume": 3})["volume"] == 1.0
    assert normalize_state({"paused": True, "volume": -1})["volume"] == 0.0


def test_missing_paused_is_malformed() -> None:
    with pytest.raises(MalformedSnapshot):
        normalize_state({"currentTime": 1})
    with pytest.raises(MalformedSnapshot):
        normalize_state(None)


def test_session_id_joins_group_and_context() -> None:
    assert session_id("tab1", "0.2") == "tab1:0.2"
