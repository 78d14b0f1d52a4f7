"""
Site profiles — selector data for UI-automation-only players.

A profile tells the automation adapter where a site keeps its play/pause
affordances, time read-outs, progress bar, volume slider and track metadata.
None of this is load-bearing logic: the lists are tried in order and the
first match wins, so they can be tuned per site from config.json:

    "automation": {
        "profiles": {
            "spotify": {"hosts": ["open.spotify.com"], "next": ["..."]}
        }
    }

Keys given in config replace the built-in list for that key; unknown
profile names create new profiles.
"""

import logging

from ..lib.config import cfg

log = logging.getLogger(__name__)

# Native-mode previous/next buttons (sites that expose a <video>/<audio>)
GENERIC_PREVIOUS = [
    ".player .previous",
    ".ytp-prev-button",
    '[aria-label*="Previous"]',
    '[data-testid*="previous"]',
]
GENERIC_NEXT = [
    ".player .next",
    ".ytp-next-button",
    '[aria-label*="Next"]',
    '[data-testid*="next"]',
]

# Fields every profile carries, with their (empty) defaults
_FIELDS = (
    "hosts", "play_pause", "pause_affordance", "play_affordance",
    "position", "duration", "progress", "progress_range", "volume",
    "volume_input", "mute", "track", "artist", "metadata_region",
    "player_area", "next", "previous",
)

BUILTIN_PROFILES = {
    "spotify": {
        "hosts": ["spotify.com"],
        "play_pause": [
            '[data-testid="control-button-playpause"]',
            '[aria-label*="Play"]',
            '[aria-label*="Pause"]',
            ".control-button",
            ".player-controls button",
        ],
        "pause_affordance": ['[data-testid="control-button-playpause"][aria-label*="Pause"]'],
        "play_affordance": ['[data-testid="control-button-playpause"][aria-label*="Play"]'],
        "position": [
            '[data-testid="playback-position"]',
            ".playback-bar__progress-time",
            ".progress-time-elapsed",
            '[aria-label*="elapsed"]',
        ],
        "duration": [
            '[data-testid="playback-duration"]',
            ".playback-bar__duration",
            ".progress-time-remaining",
            '[aria-label*="duration"]',
        ],
        "progress": [
            '[data-testid="progress-bar"]',
            ".progress-bar",
            ".playback-bar__progress-time",
            ".playback-bar .progress-bar",
            '[role="progressbar"]',
        ],
        "progress_range": ['input[type="range"][data-testid*="progress"]'],
        "volume": ['[data-testid="volume-bar"]', ".volume-slider", ".volume-bar input"],
        "volume_input": [
            '[data-testid="volume-bar"] input',
            ".volume-bar input",
            'input[type="range"][aria-label*="volume"]',
        ],
        "mute": [
            '[data-testid="volume-button"]',
            '[aria-label*="Mute"]',
            '[aria-label*="Unmute"]',
            ".volume-icon",
        ],
        "track": ['[data-testid="context-item-link"]', ".track-info__name"],
        "artist": ['[data-testid="context-item-info-artist"]', ".track-info__artists"],
        "metadata_region": ['[data-testid="now-playing-widget"]', ".now-playing"],
        "player_area": ['[data-testid="now-playing-widget"]', ".now-playing", ".player-controls"],
        "next": [
            '[data-testid="control-button-skip-forward"]',
            '[data-testid="control-button-next"]',
            '[aria-label*="Next"]',
            ".next-button",
            ".spoticon-skip-forward",
        ],
        "previous": [
            '[data-testid="control-button-skip-back"]',
            '[data-testid="control-button-previous"]',
            '[aria-label*="Previous"]',
            ".prev-button",
            ".spoticon-skip-back",
        ],
    },
}


class SiteProfile:
    """Selector lists for one automation-only site."""

    def __init__(self, name: str, **fields):
        self.name = name
        for key in _FIELDS:
            value = fields.get(key) or []
            if isinstance(value, str):
                value = [value]
            setattr(self, key, list(value))
        unknown = set(fields) - set(_FIELDS)
        if unknown:
            log.warning("Profile %s: ignoring unknown keys %s", name, sorted(unknown))

    def matches(self, hostname: str) -> bool:
        hostname = (hostname or "").lower()
        return any(hostname == h or hostname.endswith("." + h) for h in self.hosts)

    def __repr__(self):
        return f"SiteProfile({self.name!r}, hosts={self.hosts})"


def load_profiles(overrides: dict | None = None) -> list[SiteProfile]:
    """Built-in profiles merged with *overrides* (defaults to config)."""
    if overrides is None:
        overrides = cfg("automation", "profiles", default={}) or {}
    merged = {name: dict(fields) for name, fields in BUILTIN_PROFILES.items()}
    for name, fields in overrides.items():
        if not isinstance(fields, dict):
            log.warning("Profile %s: expected an object, got %r", name, type(fields).__name__)
            continue
        merged.setdefault(name, {}).update(fields)
    return [SiteProfile(name, **fields) for name, fields in merged.items()]


def match_profile(hostname: str, profiles: list[SiteProfile]) -> SiteProfile | None:
    for profile in profiles:
        if profile.matches(hostname):
            return profile
    return None
