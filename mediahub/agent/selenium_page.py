"""
Selenium implementation of the Page interface.

WebDriver is blocking and stateful (one "current" window and frame), so every
call for one browser goes through ``Browser.run``: a single-worker thread pool
that switches to the target window/frame and then runs the job.  Calls are
therefore serialized and never block the event loop.

Media events are not observable over WebDriver, so ``subscribe`` polls the
element and synthesizes the same event names a page would fire.  DOM
observers work the same way (media count, region text).
"""

import asyncio
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial

from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webelement import WebElement

from ..lib.protocol import AutomationFailure
from .page import Element, MediaElement, Page, Rect, Subscription

log = logging.getLogger(__name__)

EVENT_POLL_INTERVAL = 0.25
OBSERVER_INTERVAL = 0.5
SEEK_JUMP = 1.5            # seconds of unexplained currentTime drift that count as a seek

# ── Scripts ──

JS_PAGE_INFO = """
var icon = document.querySelector('link[rel~="icon"]');
return {url: location.href, favicon: icon ? icon.href : null, title: document.title};
"""

JS_MEDIA_METADATA = """
var md = navigator.mediaSession && navigator.mediaSession.metadata;
if (!md) return null;
var art = (md.artwork && md.artwork.length) ? md.artwork[0].src : null;
return {title: md.title || null, artwork: art};
"""

JS_PROBE = """
var el = arguments[0];
var r = el.getBoundingClientRect();
var d = el.duration;
return {
  paused: el.paused, muted: el.muted, volume: el.volume,
  currentTime: el.currentTime,
  duration: (isFinite(d) ? d : null),
  readyState: el.readyState,
  seekable: !!(el.seekable && el.seekable.length > 0),
  ended: el.ended,
  remotePlaybackDisabled: !!el.disableRemotePlayback,
  hasLayout: r.width > 0 && r.height > 0,
  isVideo: el.tagName === 'VIDEO',
  hasSource: !!(el.currentSrc || el.src || el.children.length)
};
"""

JS_RECT = """
var r = arguments[0].getBoundingClientRect();
return [r.left, r.top, r.width, r.height];
"""

JS_POINTER_SEQUENCE = """
var el = arguments[0], x = arguments[1], y = arguments[2];
var opts = {bubbles: true, cancelable: true, view: window, clientX: x, clientY: y, button: 0};
el.dispatchEvent(new PointerEvent('pointerdown', opts));
el.dispatchEvent(new MouseEvent('mousedown', opts));
el.dispatchEvent(new PointerEvent('pointermove', opts));
el.dispatchEvent(new MouseEvent('mousemove', opts));
el.dispatchEvent(new PointerEvent('pointerup', opts));
el.dispatchEvent(new MouseEvent('mouseup', opts));
el.dispatchEvent(new MouseEvent('click', opts));
return true;
"""

JS_KEY = """
var el = arguments[0];
var opts = {key: arguments[1], code: arguments[2], bubbles: true, cancelable: true};
el.dispatchEvent(new KeyboardEvent('keydown', opts));
el.dispatchEvent(new KeyboardEvent('keyup', opts));
return true;
"""

JS_RANGE_INFO = """
var el = arguments[0];
if (el.tagName !== 'INPUT' || el.type !== 'range') return null;
return [parseFloat(el.min || 0), parseFloat(el.max || 100), parseFloat(el.value)];
"""

JS_SET_RANGE = """
var el = arguments[0];
var setter = Object.getOwnPropertyDescriptor(HTMLInputElement.prototype, 'value').set;
setter.call(el, String(arguments[1]));
el.dispatchEvent(new Event('input', {bubbles: true}));
el.dispatchEvent(new Event('change', {bubbles: true}));
return true;
"""

JS_REGION_TEXT = """
var sels = arguments[0];
for (var i = 0; i < sels.length; i++) {
  var el = document.querySelector(sels[i]);
  if (el) return el.textContent;
}
return document.body ? document.body.textContent : '';
"""


class Browser:
    """A WebDriver plus the single thread that is allowed to touch it."""

    def __init__(self, driver):
        self.driver = driver
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="selenium")

    async def call(self, fn, *args):
        """Run ``fn(driver, *args)`` on the driver thread."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, partial(fn, self.driver, *args))
        except WebDriverException as e:
            raise AutomationFailure(e.msg or type(e).__name__) from e

    async def run(self, window: str, frame_path: tuple, fn, *args):
        """Run ``fn(driver, *args)`` inside one window/frame."""
        def _job(driver, *a):
            driver.switch_to.window(window)
            driver.switch_to.default_content()
            for index in frame_path:
                driver.switch_to.frame(index)
            return fn(driver, *a)
        return await self.call(_job, *args)

    async def script(self, window: str, frame_path: tuple, source: str, *args):
        return await self.run(window, frame_path,
                              lambda d, *a: d.execute_script(source, *a), *args)

    async def window_handles(self) -> list[str]:
        return await self.call(lambda d: list(d.window_handles))

    async def list_contexts(self, window: str, max_depth: int = 2) -> list[tuple[tuple, str]]:
        """Every (frame_path, url) in *window*, top-level document first."""
        def _walk(driver, path, depth, out):
            out.append((tuple(path), driver.execute_script("return location.href")))
            if depth <= 0:
                return
            count = len(driver.find_elements(By.CSS_SELECTOR, "iframe, frame"))
            for index in range(count):
                try:
                    driver.switch_to.frame(index)
                except WebDriverException:
                    continue
                try:
                    _walk(driver, path + [index], depth - 1, out)
                except WebDriverException as e:
                    log.debug("Skipping frame %s: %s", path + [index], e)
                finally:
                    driver.switch_to.parent_frame()

        def _job(driver):
            out = []
            _walk(driver, [], max_depth, out)
            return out

        return await self.run(window, (), _job)

    def shutdown(self):
        self._executor.shutdown(wait=False)
        try:
            self.driver.quit()
        except WebDriverException as e:
            log.warning("WebDriver quit failed: %s", e)


def _poll(interval: float, step) -> Subscription:
    """Run ``await step()`` every *interval* until the subscription is cancelled."""
    async def _loop():
        while True:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except AutomationFailure as e:
                log.debug("Observer poll failed: %s", e)
            except Exception as e:
                log.warning("Observer poll error: %s", e)
            await asyncio.sleep(interval)

    task = asyncio.create_task(_loop())
    return Subscription(task.cancel)


class SeleniumElement(Element):
    def __init__(self, page: "SeleniumPage", web_element: WebElement):
        self.page = page
        self.web_element = web_element

    def __repr__(self):
        return f"<{type(self).__name__} {self.web_element.id[:8]}>"

    async def _script(self, source: str, *args):
        return await self.page.script(source, self.web_element, *args)

    async def text(self) -> str:
        return await self._script("return arguments[0].textContent;") or ""

    async def attribute(self, name: str) -> str | None:
        return await self._script("return arguments[0].getAttribute(arguments[1]);", name)

    async def rect(self) -> Rect | None:
        box = await self._script(JS_RECT)
        return Rect(*box) if box else None

    async def query(self, selector: str) -> Element | None:
        found = await self._script("return arguments[0].querySelector(arguments[1]);", selector)
        return self.page.wrap(found)

    async def dispatch_pointer_sequence(self, x: float, y: float) -> bool:
        return bool(await self._script(JS_POINTER_SEQUENCE, x, y))

    async def dispatch_key(self, key: str, code: str) -> bool:
        return bool(await self._script(JS_KEY, key, code))

    async def range_info(self):
        info = await self._script(JS_RANGE_INFO)
        return tuple(float(v) for v in info) if info else None

    async def set_range_value(self, value: float) -> bool:
        return bool(await self._script(JS_SET_RANGE, value))

    async def click(self) -> bool:
        await self._script("arguments[0].click();")
        return True


class SeleniumMediaElement(SeleniumElement, MediaElement):
    async def probe(self) -> dict:
        return await self._script(JS_PROBE)

    async def play(self):
        await self._script("var p = arguments[0].play(); if (p) p.catch(function(){});")

    async def pause(self):
        await self._script("arguments[0].pause();")

    async def set_current_time(self, seconds: float):
        await self._script("arguments[0].currentTime = arguments[1];", seconds)

    async def set_volume(self, volume: float):
        await self._script("arguments[0].volume = arguments[1];", volume)

    async def set_muted(self, muted: bool):
        await self._script("arguments[0].muted = arguments[1];", bool(muted))

    def subscribe(self, events, callback) -> Subscription:
        wanted = set(events)
        last: dict = {}
        loop = asyncio.get_running_loop()
        clock = {"t": loop.time()}

        def fire(event):
            if event in wanted:
                callback(event)

        async def step():
            now = loop.time()
            elapsed, clock["t"] = now - clock["t"], now
            probe = await self.probe()
            if last:
                for event in synthesize_events(last, probe, elapsed):
                    fire(event)
            last.clear()
            last.update(probe)

        return _poll(EVENT_POLL_INTERVAL, step)


def synthesize_events(prev: dict, cur: dict, elapsed: float) -> list[str]:
    """Media events implied by two successive probes *elapsed* seconds apart."""
    events = []
    if prev.get("hasSource") and not cur.get("hasSource"):
        events.append("emptied")
    if prev.get("paused") and not cur.get("paused"):
        events.append("play")
    elif not prev.get("paused") and cur.get("paused"):
        events.append("pause")
    if prev.get("duration") != cur.get("duration"):
        events.append("durationchange")
    if prev.get("volume") != cur.get("volume") or prev.get("muted") != cur.get("muted"):
        events.append("volumechange")

    before, after = prev.get("currentTime") or 0, cur.get("currentTime") or 0
    if after != before:
        expected = before + (elapsed if not prev.get("paused") else 0)
        if abs(after - expected) > SEEK_JUMP:
            events.append("seeked")
        events.append("timeupdate")
    if cur.get("ended") and not prev.get("ended"):
        events.append("ended")
    return events


class SeleniumPage(Page):
    """One window/frame of a selenium-driven browser."""

    def __init__(self, browser: Browser, window: str, frame_path: tuple = (), url: str = ""):
        self.browser = browser
        self.window = window
        self.frame_path = tuple(frame_path)
        self.url = url
        self.favicon = None
        self._title = ""
        self._elements: dict[str, SeleniumElement] = {}

    def __repr__(self):
        return f"SeleniumPage({self.window[:8]}, {self.frame_path}, {self.url})"

    async def script(self, source: str, *args):
        return await self.browser.script(self.window, self.frame_path, source, *args)

    def wrap(self, web_element, media: bool = False) -> SeleniumElement | None:
        """Wrap a WebElement, reusing the wrapper for a node seen before.

        Wrapper identity is what lets the adapter recognise the element it
        is already attached to.
        """
        if not isinstance(web_element, WebElement):
            return None
        existing = self._elements.get(web_element.id)
        if existing is not None and (isinstance(existing, MediaElement) or not media):
            return existing
        cls = SeleniumMediaElement if media else SeleniumElement
        wrapper = cls(self, web_element)
        self._elements[web_element.id] = wrapper
        return wrapper

    async def refresh(self) -> dict:
        """Re-read url, favicon and title.  Returns the raw info."""
        info = await self.script(JS_PAGE_INFO) or {}
        self.url = info.get("url") or self.url
        self.favicon = info.get("favicon")
        self._title = info.get("title") or ""
        return info

    async def title(self) -> str:
        self._title = await self.script("return document.title;") or self._title
        return self._title

    async def media_metadata(self) -> dict | None:
        return await self.script(JS_MEDIA_METADATA)

    async def media_count(self) -> int:
        return int(await self.script("return document.querySelectorAll('video, audio').length;") or 0)

    async def query_media(self) -> list[MediaElement]:
        found = await self.script("return Array.from(document.querySelectorAll('video, audio'));")
        return [el for el in (self.wrap(f, media=True) for f in found or []) if el is not None]

    async def query(self, selector: str) -> Element | None:
        return self.wrap(await self.script("return document.querySelector(arguments[0]);", selector))

    async def element_at(self, x: float, y: float) -> Element | None:
        return self.wrap(await self.script(
            "return document.elementFromPoint(arguments[0], arguments[1]);", x, y))

    async def focused_element(self) -> Element | None:
        return self.wrap(await self.script("return document.activeElement;"))

    def observe_media_added(self, callback) -> Subscription:
        seen = {"count": None}

        async def step():
            count = await self.media_count()
            if seen["count"] is not None and count > seen["count"]:
                callback()
            seen["count"] = count

        return _poll(OBSERVER_INTERVAL, step)

    def observe_region(self, selectors, callback) -> Subscription:
        selectors = list(selectors)
        seen = {"digest": None}

        async def step():
            text = await self.script(JS_REGION_TEXT, selectors) or ""
            digest = hashlib.sha1(text.encode("utf-8", "replace")).hexdigest()
            if seen["digest"] is not None and digest != seen["digest"]:
                callback()
            seen["digest"] = digest

        return _poll(OBSERVER_INTERVAL, step)
