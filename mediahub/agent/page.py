"""
Page — the adapter's view of one browser execution context (tab or frame).

Adapters never touch a browser API directly.  They talk to a Page, which
exposes just enough of the document for discovery, state probing and UI
automation.  ``selenium_page.py`` implements it against a WebDriver; tests
implement it in memory.

Contract (all coroutines unless noted):

    class MyPage(Page):
        url, hostname, favicon        — plain attributes / properties
        async def title() -> str
        async def media_metadata() -> dict | None   # {"title", "artwork"}
        async def query_media() -> list[MediaElement]
        async def query(selector) -> Element | None
        async def element_at(x, y) -> Element | None
        async def focused_element() -> Element | None
        def observe_media_added(callback) -> Subscription
        def observe_region(selectors, callback) -> Subscription

Element probes are plain dicts so one round-trip fetches everything the
scoring and snapshot code needs:

    {"paused", "muted", "volume", "currentTime", "duration", "readyState",
     "seekable", "ended", "remotePlaybackDisabled", "hasLayout", "isVideo",
     "hasSource"}
"""

import logging
from urllib.parse import urlparse

log = logging.getLogger(__name__)

# Playback events a native media element reports
MEDIA_EVENTS = (
    "play", "pause", "timeupdate", "durationchange",
    "volumechange", "seeked", "emptied", "ended",
)


class Subscription:
    """Explicit cancel handle for a registered callback.

    ``cancel()`` is idempotent; *on_cancel* runs at most once.
    """

    def __init__(self, on_cancel=None):
        self._on_cancel = on_cancel
        self.active = True

    def cancel(self):
        if not self.active:
            return
        self.active = False
        if self._on_cancel:
            try:
                self._on_cancel()
            except Exception as e:
                log.debug("Subscription cancel hook failed: %s", e)
            self._on_cancel = None


class Rect:
    """Viewport-relative bounding box."""

    __slots__ = ("left", "top", "width", "height")

    def __init__(self, left: float, top: float, width: float, height: float):
        self.left = left
        self.top = top
        self.width = width
        self.height = height

    def point_at(self, fraction: float) -> tuple[float, float]:
        """Point at *fraction* of the width, vertically centred."""
        return self.left + self.width * fraction, self.top + self.height / 2

    def center(self) -> tuple[float, float]:
        return self.point_at(0.5)

    def __repr__(self):
        return f"Rect({self.left}, {self.top}, {self.width}, {self.height})"


class Element:
    """A node in the page.  Every action returns True when it was dispatched."""

    async def text(self) -> str:
        raise NotImplementedError

    async def attribute(self, name: str) -> str | None:
        raise NotImplementedError

    async def rect(self) -> Rect | None:
        raise NotImplementedError

    async def query(self, selector: str) -> "Element | None":
        """First descendant matching *selector*."""
        raise NotImplementedError

    async def dispatch_pointer_sequence(self, x: float, y: float) -> bool:
        """pointerdown/mousedown → move → up → click at (x, y) on this node."""
        raise NotImplementedError

    async def dispatch_key(self, key: str, code: str) -> bool:
        """keydown + keyup pair targeted at this node."""
        raise NotImplementedError

    async def range_info(self) -> tuple[float, float, float] | None:
        """(min, max, value) if this is a range input, else None."""
        raise NotImplementedError

    async def set_range_value(self, value: float) -> bool:
        """Set a range input's value and fire input + change."""
        raise NotImplementedError

    async def click(self) -> bool:
        raise NotImplementedError


class MediaElement(Element):
    """A native <video>/<audio> element."""

    async def probe(self) -> dict:
        raise NotImplementedError

    async def play(self):
        raise NotImplementedError

    async def pause(self):
        raise NotImplementedError

    async def set_current_time(self, seconds: float):
        raise NotImplementedError

    async def set_volume(self, volume: float):
        raise NotImplementedError

    async def set_muted(self, muted: bool):
        raise NotImplementedError

    def subscribe(self, events, callback) -> Subscription:
        """Call ``callback(event_name)`` for each of *events*."""
        raise NotImplementedError


class Page:
    """One execution context.  See module docstring for the contract."""

    url: str = ""
    favicon: str | None = None

    @property
    def hostname(self) -> str:
        try:
            return urlparse(self.url).hostname or ""
        except ValueError:
            return ""

    async def title(self) -> str:
        raise NotImplementedError

    async def media_metadata(self) -> dict | None:
        """Media-session metadata, ``{"title": str, "artwork": str | None}``."""
        return None

    async def query_media(self) -> list[MediaElement]:
        raise NotImplementedError

    async def query(self, selector: str) -> Element | None:
        raise NotImplementedError

    async def element_at(self, x: float, y: float) -> Element | None:
        raise NotImplementedError

    async def focused_element(self) -> Element | None:
        raise NotImplementedError

    def observe_media_added(self, callback) -> Subscription:
        """Call ``callback()`` whenever media nodes appear in the document."""
        raise NotImplementedError

    def observe_region(self, selectors, callback) -> Subscription:
        """Call ``callback()`` when the first region matching *selectors* changes.

        Falls back to the whole document when no selector matches.
        """
        raise NotImplementedError

    async def query_first(self, selectors) -> tuple[str, Element] | None:
        """First (selector, element) found, trying *selectors* in order."""
        for selector in selectors:
            try:
                el = await self.query(selector)
            except Exception as e:
                log.debug("query(%s) failed: %s", selector, e)
                continue
            if el is not None:
                return selector, el
        return None
