"""In-memory Page/Element fakes for adapter and automation tests."""

from __future__ import annotations

from mediahub.agent.page import Element, MediaElement, Page, Rect, Subscription
from mediahub.lib.protocol import AutomationFailure


class FakeElement(Element):
    def __init__(self, *, text: str = "", attrs: dict | None = None,
                 rect: Rect | None = None, children: dict | None = None,
                 range_value: tuple | None = None, pointer_ok: bool = False,
                 click_ok: bool = True, fail: bool = False, name: str = "el") -> None:
        self._text = text
        self.attrs = dict(attrs or {})
        self._rect = rect
        self.children = dict(children or {})
        self.range = list(range_value) if range_value else None
        self.pointer_ok = pointer_ok
        self.click_ok = click_ok
        self.fail = fail
        self.name = name
        self.actions: list[tuple] = []
        self.on_click = None

    def __repr__(self) -> str:
        return f"FakeElement({self.name})"

    def _check(self) -> None:
        if self.fail:
            raise AutomationFailure(f"{self.name} is detached")

    async def text(self) -> str:
        return self._text

    async def attribute(self, name: str) -> str | None:
        return self.attrs.get(name)

    async def rect(self) -> Rect | None:
        return self._rect

    async def query(self, selector: str) -> Element | None:
        return self.children.get(selector)

    async def dispatch_pointer_sequence(self, x: float, y: float) -> bool:
        self._check()
        self.actions.append(("pointer", x, y))
        return self.pointer_ok

    async def dispatch_key(self, key: str, code: str) -> bool:
        self.actions.append(("key", key, code))
        return True

    async def range_info(self):
        return tuple(self.range) if self.range else None

    async def set_range_value(self, value: float) -> bool:
        self._check()
        self.actions.append(("range", value))
        self.range[2] = value
        return True

    async def click(self) -> bool:
        self._check()
        self.actions.append(("click",))
        if self.on_click:
            self.on_click()
        return self.click_ok


class FakeMediaElement(FakeElement, MediaElement):
    def __init__(self, name: str = "video", **probe) -> None:
        super().__init__(name=name)
        self.state = {
            "paused": True, "muted": False, "volume": 1.0, "currentTime": 0.0,
            "duration": 120.0, "readyState": 4, "seekable": True, "ended": False,
            "remotePlaybackDisabled": False, "hasLayout": True, "isVideo": True,
            "hasSource": True,
        }
        self.state.update(probe)
        self.listeners: list = []

    async def probe(self) -> dict:
        return dict(self.state)

    def fire(self, event: str) -> None:
        for events, callback in list(self.listeners):
            if event in events:
                callback(event)

    async def play(self) -> None:
        self.state["paused"] = False
        self.fire("play")

    async def pause(self) -> None:
        self.state["paused"] = True
        self.fire("pause")

    async def set_current_time(self, seconds: float) -> None:
        self.state["currentTime"] = seconds
        self.fire("seeked")

    async def set_volume(self, volume: float) -> None:
        self.state["volume"] = volume
        self.fire("volumechange")

    async def set_muted(self, muted: bool) -> None:
        self.state["muted"] = muted
        self.fire("volumechange")

    def subscribe(self, events, callback) -> Subscription:
        entry = (tuple(events), callback)
        self.listeners.append(entry)
        return Subscription(lambda: self.listeners.remove(entry))


class FakePage(Page):
    def __init__(self, url: str = "https://example.com/watch", *, media=None,
                 selectors: dict | None = None, title: str = "Example",
                 metadata: dict | None = None, at=None, focused=None) -> None:
        self.url = url
        self.favicon = "https://example.com/favicon.ico"
        self.media = list(media or [])
        self.selectors = dict(selectors or {})
        self._title = title
        self.metadata = metadata
        self.at = at
        self.focused = focused
        self.media_callbacks: list = []
        self.region_callbacks: list = []
        self.query_media_calls = 0

    async def title(self) -> str:
        return self._title

    async def media_metadata(self) -> dict | None:
        return self.metadata

    async def query_media(self) -> list:
        self.query_media_calls += 1
        return list(self.media)

    async def query(self, selector: str) -> Element | None:
        return self.selectors.get(selector)

    async def element_at(self, x: float, y: float) -> Element | None:
        return self.at

    async def focused_element(self) -> Element | None:
        return self.focused

    def observe_media_added(self, callback) -> Subscription:
        self.media_callbacks.append(callback)
        return Subscription(lambda: self.media_callbacks.remove(callback))

    def observe_region(self, selectors, callback) -> Subscription:
        self.region_callbacks.append(callback)
        return Subscription(lambda: self.region_callbacks.remove(callback))

    def add_media(self, element: FakeMediaElement) -> None:
        self.media.append(element)
        for callback in list(self.media_callbacks):
            callback()


class Recorder:
    """Collects ``emit(msg_type, data)`` / ``send(...)`` calls."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def __call__(self, *args) -> None:
        self.calls.append(args)

    def of_type(self, msg_type: str) -> list:
        return [c for c in self.calls if c[0] == msg_type]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
