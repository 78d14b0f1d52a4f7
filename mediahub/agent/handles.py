"""
Source handles — the one contract an adapter controls, native or virtual.

    handle.play() / pause() / seek(seconds) / set_volume(v) / set_muted(m)
    handle.current_state()  → normalized state dict (see lib/protocol.py)
    handle.metadata()       → {"title", "artworkUrl"}
    handle.subscribe(cb)    → Subscription; cb(event_name) on every change
    handle.release()        → cancel everything the handle registered

NativeHandle wraps a page media element and forwards its events.
VirtualHandle holds shadow state that only its AutomationAdapter writes;
commands are turned into UI automation by that adapter.
"""

import logging
import math

from ..lib.protocol import clamp, normalize_state
from .page import MEDIA_EVENTS, Subscription
from .profiles import GENERIC_NEXT, GENERIC_PREVIOUS

log = logging.getLogger(__name__)


class SourceHandle:
    is_virtual = False

    def __init__(self):
        self._subs: list[Subscription] = []
        self.released = False

    async def play(self):
        raise NotImplementedError

    async def pause(self):
        raise NotImplementedError

    async def seek(self, seconds: float) -> bool:
        """Jump to an absolute position.  False if the source cannot seek."""
        raise NotImplementedError

    async def set_volume(self, volume: float):
        raise NotImplementedError

    async def set_muted(self, muted: bool):
        raise NotImplementedError

    async def current_state(self) -> dict:
        raise NotImplementedError

    async def metadata(self) -> dict:
        raise NotImplementedError

    async def previous_track(self) -> bool:
        raise NotImplementedError

    async def next_track(self) -> bool:
        raise NotImplementedError

    def subscribe(self, callback) -> Subscription:
        raise NotImplementedError

    def release(self):
        """Cancel every subscription this handle made.  Safe to call twice."""
        self.released = True
        subs, self._subs = self._subs, []
        for sub in subs:
            sub.cancel()


class NativeHandle(SourceHandle):
    """A real <video>/<audio> element."""

    def __init__(self, page, element):
        super().__init__()
        self.page = page
        self.element = element

    def __repr__(self):
        return f"NativeHandle({self.element!r})"

    async def play(self):
        await self.element.play()

    async def pause(self):
        await self.element.pause()

    async def seek(self, seconds: float) -> bool:
        probe = await self.element.probe()
        if not probe.get("seekable"):
            log.debug("Seek ignored: element not seekable")
            return False
        duration = probe.get("duration")
        if not isinstance(duration, (int, float)) or math.isnan(duration) or duration <= 0:
            duration = math.inf
        target = clamp(float(seconds), 0.0, duration)
        await self.element.set_current_time(target)
        return True

    async def set_volume(self, volume: float):
        await self.element.set_volume(clamp(float(volume), 0.0, 1.0))

    async def set_muted(self, muted: bool):
        await self.element.set_muted(bool(muted))

    async def current_state(self) -> dict:
        probe = await self.element.probe()
        return normalize_state({
            "paused": probe.get("paused", True),
            "muted": probe.get("muted", False),
            "volume": probe.get("volume", 1.0),
            "currentTime": probe.get("currentTime", 0),
            "duration": probe.get("duration"),
            "canSeek": bool(probe.get("seekable")),
            "ended": probe.get("ended", False),
        })

    async def metadata(self) -> dict:
        title = None
        artwork = None
        meta = await self.page.media_metadata()
        if meta:
            title = meta.get("title") or None
            artwork = meta.get("artwork") or None
        if not title:
            title = await self.page.title()
        return {"title": title, "artworkUrl": artwork}

    async def _click_first(self, selectors) -> bool:
        for selector in selectors:
            el = await self.page.query(selector)
            if el is None:
                continue
            try:
                if await el.click():
                    return True
            except Exception as e:
                log.debug("Click on %s failed: %s", selector, e)
        return False

    async def previous_track(self) -> bool:
        return await self._click_first(GENERIC_PREVIOUS)

    async def next_track(self) -> bool:
        return await self._click_first(GENERIC_NEXT)

    def subscribe(self, callback) -> Subscription:
        sub = self.element.subscribe(MEDIA_EVENTS, callback)
        self._subs.append(sub)
        return sub


class VirtualHandle(SourceHandle):
    """Shadow state for a site with no native media element.

    ``_current_time``, ``_volume`` and ``_muted`` (plus ``paused``,
    ``duration`` and the track text) are written only by the owning
    AutomationAdapter.
    """

    is_virtual = True

    def __init__(self, automation):
        super().__init__()
        self.automation = automation
        self.paused = True
        self.duration = 0.0
        self._current_time = 0.0
        self._volume = 1.0
        self._muted = False
        self.track = "Unknown Track"
        self.artist = "Unknown Artist"
        self._listeners: list = []

    def __repr__(self):
        return f"VirtualHandle({self.automation.profile.name})"

    async def play(self):
        await self.automation.toggle_playback("play")

    async def pause(self):
        await self.automation.toggle_playback("pause")

    async def seek(self, seconds: float) -> bool:
        return await self.automation.seek(seconds)

    async def set_volume(self, volume: float):
        await self.automation.set_volume(volume)

    async def set_muted(self, muted: bool):
        await self.automation.set_muted(muted)

    async def current_state(self) -> dict:
        return normalize_state({
            "paused": self.paused,
            "muted": self._muted,
            "volume": self._volume,
            "currentTime": self._current_time,
            "duration": self.duration,
            "canSeek": self.duration > 0,
            "ended": False,
        })

    async def metadata(self) -> dict:
        return {"title": f"{self.track} - {self.artist}", "artworkUrl": None}

    async def previous_track(self) -> bool:
        return await self.automation.skip("previous")

    async def next_track(self) -> bool:
        return await self.automation.skip("next")

    def subscribe(self, callback) -> Subscription:
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        sub = Subscription(_remove)
        self._subs.append(sub)
        return sub

    def notify(self, event: str):
        """Called by the automation adapter after it changed the shadow state."""
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                log.warning("Virtual handle listener failed on %s: %s", event, e)

    def release(self):
        super().release()
        self.automation.stop()
