"""Rank candidate media elements so an adapter attaches to the one the user cares about."""

import logging
import math

log = logging.getLogger(__name__)

# Weights. Empirically tuned; treat as configuration, not as proven values.
NOT_READY_PENALTY = 10
PLAYING_BONUS = 100
STARTED_BONUS = 50
DURATION_BONUS_CAP = 30
VISIBLE_BONUS = 20
VIDEO_BONUS = 10
AUDIBLE_BONUS = 10
SOURCE_BONUS = 5


def _known_duration(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return None
    return float(value)


def score(probe: dict) -> float:
    """Score one candidate probe (see page.py for the probe keys).

    -1 is a hard exclusion: elements that opted out of remote playback are
    never controlled.
    """
    if probe.get("remotePlaybackDisabled"):
        return -1

    result = 0.0
    if probe.get("readyState", 0) == 0:
        result -= NOT_READY_PENALTY
    if not probe.get("paused", True):
        result += PLAYING_BONUS
    if (probe.get("currentTime") or 0) > 0:
        result += STARTED_BONUS
    duration = _known_duration(probe.get("duration"))
    if duration is not None:
        result += min(duration / 60, DURATION_BONUS_CAP)
    if probe.get("hasLayout"):
        result += VISIBLE_BONUS
    if probe.get("isVideo"):
        result += VIDEO_BONUS
    if not probe.get("muted", False):
        result += AUDIBLE_BONUS
    if probe.get("hasSource"):
        result += SOURCE_BONUS
    return result


def pick_best(scored):
    """Return ``(candidate, score)`` for the highest score >= 0, or None.

    *scored* is an iterable of ``(candidate, score)`` pairs.  Ties keep the
    earlier candidate (document order).
    """
    best = None
    best_score = -1.0
    for candidate, value in scored:
        if value > best_score:
            best, best_score = candidate, value
    if best is None or best_score < 0:
        return None
    return best, best_score
