# MediaHub
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Automation adapter — a virtual media source for sites with no <video>/<audio>.

State is scraped from the page's own UI once per poll interval (plus a
mutation observer on the now-playing region).  Commands are carried out by
driving that UI through an ordered cascade of strategies:

    1. pointer_sequence   — down/move/up/click on the target itself
    2. hit_test           — same sequence on whatever sits at those coordinates
    3. range_input        — set a raw <input type=range> and fire input/change
    4. click_descendant   — click() any button/link inside the target

Each strategy returns True on definite success; exceptions count as failure.
When every strategy fails the virtual state is left alone and the only trace
is a log line.  The user simply sees no effect.
"""

import asyncio
import logging
import re

from ..lib.protocol import clamp
from .handles import VirtualHandle

log = logging.getLogger(__name__)

SPACE_KEY = (" ", "Space")
CLICKABLE = 'button, a, [role="button"]'
RANGE_INPUT = 'input[type="range"]'

_NON_TIME = re.compile(r"[^\d:]")


def parse_time(text) -> int:
    """Parse "M:SS" / "H:MM:SS" into seconds.  Anything else is 0."""
    if not text:
        return 0
    parts = _NON_TIME.sub("", str(text).strip()).split(":")
    try:
        numbers = [int(p) if p else 0 for p in parts]
    except ValueError:
        return 0
    if len(numbers) == 2:
        return numbers[0] * 60 + numbers[1]
    if len(numbers) == 3:
        return numbers[0] * 3600 + numbers[1] * 60 + numbers[2]
    log.debug("Could not parse time string: %r", text)
    return 0


class AutomationTarget:
    """What a strategy acts on: an element and a point inside it."""

    def __init__(self, page, element, x: float, y: float, fraction: float = 0.5,
                 range_fallback=()):
        self.page = page
        self.element = element
        self.x = x
        self.y = y
        self.fraction = fraction
        self.range_fallback = list(range_fallback)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
async def pointer_sequence(target: AutomationTarget) -> bool:
    return await target.element.dispatch_pointer_sequence(target.x, target.y)


async def hit_test(target: AutomationTarget) -> bool:
    el = await target.page.element_at(target.x, target.y)
    if el is None:
        return False
    return await el.dispatch_pointer_sequence(target.x, target.y)


async def range_input(target: AutomationTarget) -> bool:
    slider = await target.element.query(RANGE_INPUT)
    if slider is None and target.range_fallback:
        found = await target.page.query_first(target.range_fallback)
        slider = found[1] if found else None
    if slider is None:
        return False
    info = await slider.range_info()
    if info is None:
        return False
    low, high, _ = info
    return await slider.set_range_value(low + target.fraction * (high - low))


async def click_descendant(target: AutomationTarget) -> bool:
    child = await target.element.query(CLICKABLE)
    if child is None:
        return False
    return await child.click()


async def click_element(target: AutomationTarget) -> bool:
    return await target.element.click()


DEFAULT_CASCADE = (pointer_sequence, hit_test, range_input, click_descendant)
POINTER_CASCADE = (pointer_sequence, hit_test)
BUTTON_CASCADE = (click_element, pointer_sequence)


async def run_cascade(strategies, target: AutomationTarget, label: str = "action") -> bool:
    """Try *strategies* in order until one reports success."""
    for strategy in strategies:
        try:
            ok = await strategy(target)
        except Exception as e:
            log.debug("%s: %s raised %s", label, strategy.__name__, e)
            ok = False
        if ok:
            log.debug("%s: %s succeeded", label, strategy.__name__)
            return True
        log.debug("%s: %s had no effect", label, strategy.__name__)
    log.info("%s: all automation strategies failed", label)
    return False


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------
class AutomationAdapter:
    """Drives a VirtualHandle from a site's UI, per its SiteProfile."""

    def __init__(self, page, profile, *, poll_interval: float = 1.0,
                 mute_recheck: float = 0.15):
        self.page = page
        self.profile = profile
        self.poll_interval = poll_interval
        self.mute_recheck = mute_recheck
        self.handle = VirtualHandle(self)
        self._poll_task: asyncio.Task | None = None
        self._region_sub = None
        self._pending: set[asyncio.Task] = set()

    # ── Lifecycle ──

    def start(self):
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
        if self._region_sub is None:
            self._region_sub = self.page.observe_region(
                self.profile.metadata_region, self._on_region_change)
        log.info("Automation adapter started for %s (profile %s)",
                 self.page.hostname, self.profile.name)

    def stop(self):
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None
        if self._region_sub:
            self._region_sub.cancel()
            self._region_sub = None
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _on_region_change(self):
        self.handle.notify("metadata")

    async def _poll_loop(self):
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("Automation poll failed on %s: %s", self.page.hostname, e)
            await asyncio.sleep(self.poll_interval)

    # ── State scraping ──

    async def _text_of(self, selectors) -> str | None:
        found = await self.page.query_first(selectors)
        if not found:
            return None
        text = await found[1].text()
        return text.strip() if text else None

    async def _muted_from_label(self) -> bool | None:
        found = await self.page.query_first(self.profile.mute)
        if not found:
            return None
        label = (await found[1].attribute("aria-label") or "").lower()
        # The label names the action the control will perform
        if "unmute" in label:
            return True
        if "mute" in label:
            return False
        return None

    async def _volume_from_slider(self) -> float | None:
        found = await self.page.query_first(self.profile.volume_input)
        if not found:
            return None
        info = await found[1].range_info()
        if info is None:
            return None
        low, high, value = info
        return clamp((value - low) / ((high - low) or 1), 0.0, 1.0)

    async def poll_once(self) -> bool:
        """Refresh the shadow state from the page.  True if a snapshot was due."""
        handle = self.handle
        playing = await self.page.query_first(self.profile.pause_affordance) is not None
        was_playing = not handle.paused

        handle.paused = not playing
        handle._current_time = parse_time(await self._text_of(self.profile.position))
        handle.duration = parse_time(await self._text_of(self.profile.duration))

        volume = await self._volume_from_slider()
        if volume is not None:
            handle._volume = volume
        muted = await self._muted_from_label()
        if muted is not None:
            handle._muted = muted

        handle.track = await self._text_of(self.profile.track) or "Unknown Track"
        handle.artist = await self._text_of(self.profile.artist) or "Unknown Artist"

        if was_playing != playing or playing:
            handle.notify("poll")
            return True
        return False

    # ── Commands ──

    async def toggle_playback(self, action: str) -> bool:
        """Click the control for *action* ("play" or "pause").

        The matching affordance is tried first, then the shared play/pause
        selectors, then the centre of the player area.
        """
        focused = await self.page.focused_element()
        if focused is not None:
            try:
                await focused.dispatch_key(*SPACE_KEY)
            except Exception as e:
                log.debug("Space key dispatch failed: %s", e)

        profile = self.profile
        direct = profile.play_affordance if action == "play" else profile.pause_affordance
        for selector in [*direct, *profile.play_pause]:
            button = await self.page.query(selector)
            if button is None:
                continue
            rect = await button.rect()
            x, y = rect.center() if rect else (0.0, 0.0)
            target = AutomationTarget(self.page, button, x, y)
            if await run_cascade(POINTER_CASCADE, target, f"{action} via {selector}"):
                return True

        found = await self.page.query_first(self.profile.player_area)
        if found:
            rect = await found[1].rect()
            if rect:
                x, y = rect.center()
                el = await self.page.element_at(x, y)
                if el is not None:
                    log.debug("%s: falling back to element at player centre", action)
                    return await run_cascade(
                        POINTER_CASCADE, AutomationTarget(self.page, el, x, y), action)
        log.info("%s: no play/pause control found on %s", action, self.page.hostname)
        return False

    async def seek(self, seconds: float) -> bool:
        handle = self.handle
        if not handle.duration:
            log.info("Cannot seek on %s: no duration available", self.page.hostname)
            return False
        fraction = clamp(seconds / handle.duration, 0.0, 1.0)

        found = await self.page.query_first(self.profile.progress)
        if not found:
            log.info("Cannot seek on %s: no progress bar found", self.page.hostname)
            return False
        selector, bar = found
        rect = await bar.rect()
        if rect is None:
            return False
        x, y = rect.point_at(fraction)
        log.debug("Seek to %.1fs (%.1f%%) via %s at (%.0f, %.0f)",
                  seconds, fraction * 100, selector, x, y)

        target = AutomationTarget(self.page, bar, x, y, fraction, self.profile.progress_range)
        if not await run_cascade(DEFAULT_CASCADE, target, "seek"):
            return False
        handle._current_time = clamp(float(seconds), 0.0, float(handle.duration))
        handle.notify("seeked")
        return True

    async def set_volume(self, volume: float) -> bool:
        volume = clamp(float(volume), 0.0, 1.0)
        found = await self.page.query_first(self.profile.volume)
        if not found:
            log.info("No volume control found on %s", self.page.hostname)
            return False
        _, slider = found

        ok = False
        info = await slider.range_info()
        if info is not None:
            low, high, _ = info
            try:
                ok = await slider.set_range_value(low + volume * (high - low))
            except Exception as e:
                log.debug("volume: range input raised %s", e)
        else:
            rect = await slider.rect()
            if rect is not None:
                x, y = rect.point_at(volume)
                ok = await run_cascade(
                    POINTER_CASCADE, AutomationTarget(self.page, slider, x, y, volume), "volume")
        if not ok:
            return False

        self.handle._volume = volume
        if volume == 0:
            self.handle._muted = True
        self.handle.notify("volumechange")
        return True

    async def _detect_muted(self) -> bool:
        found = await self.page.query_first(self.profile.volume_input)
        if found:
            info = await found[1].range_info()
            if info is not None:
                return info[2] == 0
        muted = await self._muted_from_label()
        if muted is not None:
            return muted
        return self.handle._muted

    async def set_muted(self, muted: bool | None) -> bool:
        """Set mute; None toggles."""
        found = await self.page.query_first(self.profile.mute)
        if not found:
            log.info("No mute control found on %s", self.page.hostname)
            return False
        if muted is not None and await self._detect_muted() == bool(muted):
            return True

        _, button = found
        rect = await button.rect()
        x, y = rect.center() if rect else (0.0, 0.0)
        ok = await run_cascade(BUTTON_CASCADE, AutomationTarget(self.page, button, x, y), "mute")
        if ok:
            self._spawn(self._recheck_mute())
        return ok

    async def _recheck_mute(self):
        await asyncio.sleep(self.mute_recheck)
        muted = await self._detect_muted()
        self.handle._muted = muted
        self.handle.notify("volumechange")

    async def skip(self, direction: str) -> bool:
        selectors = self.profile.next if direction == "next" else self.profile.previous
        found = await self.page.query_first(selectors)
        if not found:
            log.info("No %s-track control found on %s", direction, self.page.hostname)
            return False
        selector, button = found
        rect = await button.rect()
        x, y = rect.center() if rect else (0.0, 0.0)
        return await run_cascade(
            POINTER_CASCADE, AutomationTarget(self.page, button, x, y), f"{direction} via {selector}")
