# MediaHub
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SourceAdapter — one per execution context (tab or frame).

Finds the media source worth controlling in its page, attaches a handle to
it, turns the handle's change events into SESSION_UPDATE snapshots and
executes routed MEDIA_CONTROL commands.

    adapter = SourceAdapter(page, emit)      # emit(msg_type, data) coroutine
    await adapter.start()                    # discovery + media observer
    ok = await adapter.handle_command("seek", {"delta": 10})
    await adapter.stop()                     # detach + SESSION_REMOVE

Discovery scores every <video>/<audio> candidate and attaches to the best
one (score >= 0).  A page with no candidates whose host matches a site
profile switches to a virtual source driven by UI automation; that switch
is permanent for the adapter's lifetime.  Nothing playable → bounded
retries, then silence.
"""

import asyncio
import logging

from ..lib.protocol import SESSION_REMOVE, SESSION_UPDATE
from .automation import AutomationAdapter
from .handles import NativeHandle
from .profiles import load_profiles, match_profile
from .scoring import pick_best, score

log = logging.getLogger(__name__)

COALESCE_DELAY = 0.25      # max one timeupdate snapshot per window
RETRY_DELAY = 2.0
RETRY_COUNT = 5
SETTLE_DELAY = 0.1         # wait after new media nodes appear
SEEK_SETTLE = 1.2          # max wait for 'seeked' before the follow-up snapshot


class SourceAdapter:
    def __init__(self, page, emit, *, profiles=None,
                 coalesce: float = COALESCE_DELAY,
                 retry_count: int = RETRY_COUNT,
                 retry_delay: float = RETRY_DELAY,
                 settle_delay: float = SETTLE_DELAY,
                 seek_settle: float = SEEK_SETTLE,
                 poll_interval: float = 1.0):
        self.page = page
        self.emit = emit
        self.profiles = profiles if profiles is not None else load_profiles()
        self.coalesce = coalesce
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.settle_delay = settle_delay
        self.seek_settle = seek_settle
        self.poll_interval = poll_interval

        self.handle = None
        self.virtual = False
        self.retries = 0
        self.seek_in_progress = False
        self._sent_any = False
        self._stopped = False
        self._coalesce_timer: asyncio.TimerHandle | None = None
        self._retry_timer: asyncio.TimerHandle | None = None
        self._settle_timer: asyncio.TimerHandle | None = None
        self._media_sub = None
        self._seeked = asyncio.Event()
        self._update_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ── Lifecycle ──

    async def start(self):
        self._media_sub = self.page.observe_media_added(self._on_media_added)
        await self.discover()

    async def stop(self):
        """Tear down: cancel every timer, detach, tell the coordinator."""
        self._stopped = True
        for timer in (self._retry_timer, self._settle_timer):
            if timer:
                timer.cancel()
        self._retry_timer = self._settle_timer = None
        if self._media_sub:
            self._media_sub.cancel()
            self._media_sub = None
        self.detach()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._sent_any:
            self._sent_any = False
            try:
                await self.emit(SESSION_REMOVE, {})
            except Exception as e:
                log.debug("SESSION_REMOVE not delivered: %s", e)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Discovery ──

    async def discover(self):
        """Scan the page and attach to the best source, or schedule a retry."""
        self._retry_timer = None
        if self.virtual or self._stopped:
            return

        candidates = await self.page.query_media()
        log.debug("%s: %d media candidates", self.page.hostname, len(candidates))

        if not candidates:
            profile = match_profile(self.page.hostname, self.profiles)
            if profile is not None:
                self._enter_virtual(profile)
                return

        scored = []
        for candidate in candidates:
            try:
                probe = await candidate.probe()
            except Exception as e:
                log.debug("Probe failed for %r: %s", candidate, e)
                continue
            value = score(probe)
            log.debug("Candidate %r scored %.1f", candidate, value)
            scored.append((candidate, value))

        best = pick_best(scored)
        if best is not None:
            element, value = best
            if isinstance(self.handle, NativeHandle) and self.handle.element is element:
                return
            log.info("%s: attaching to %r (score %.1f)", self.page.hostname, element, value)
            self.attach(NativeHandle(self.page, element))
            return

        if self.handle is not None:
            return
        if self.retries < self.retry_count:
            self.retries += 1
            log.debug("%s: nothing playable, retry %d/%d in %.1fs", self.page.hostname,
                      self.retries, self.retry_count, self.retry_delay)
            loop = asyncio.get_running_loop()
            self._retry_timer = loop.call_later(
                self.retry_delay, lambda: self._spawn(self.discover()))
        else:
            log.debug("%s: no playable media, giving up", self.page.hostname)

    def _enter_virtual(self, profile):
        log.info("%s: no media elements, using virtual source (%s)",
                 self.page.hostname, profile.name)
        self.virtual = True
        if self._media_sub:
            self._media_sub.cancel()
            self._media_sub = None
        automation = AutomationAdapter(self.page, profile, poll_interval=self.poll_interval)
        self.attach(automation.handle)
        automation.start()

    def _on_media_added(self):
        if self.virtual or self._stopped or self._settle_timer is not None:
            return
        loop = asyncio.get_running_loop()

        def _settled():
            self._settle_timer = None
            self._spawn(self.discover())

        self._settle_timer = loop.call_later(self.settle_delay, _settled)

    # ── Attach / detach ──

    def attach(self, handle):
        self.detach()
        self.handle = handle
        handle.subscribe(lambda event: self._on_event(handle, event))
        self.schedule_update()

    def detach(self):
        if self._coalesce_timer:
            self._coalesce_timer.cancel()
            self._coalesce_timer = None
        if self.handle is not None:
            self.handle.release()
            self.handle = None

    def _on_event(self, handle, event: str):
        if handle is not self.handle:
            return
        if event == "timeupdate":
            if self._coalesce_timer is None:
                loop = asyncio.get_running_loop()
                self._coalesce_timer = loop.call_later(self.coalesce, self._flush_coalesced)
            return
        if event == "seeked":
            self._seeked.set()
        self.schedule_update()

    def _flush_coalesced(self):
        self._coalesce_timer = None
        self.schedule_update()

    # ── Snapshots ──

    def schedule_update(self):
        self._spawn(self.send_update())

    async def send_update(self):
        """Emit one SESSION_UPDATE for the attached handle, unless seek-suppressed."""
        async with self._update_lock:
            handle = self.handle
            if handle is None:
                return
            if self.seek_in_progress:
                log.debug("Skipping snapshot while seek in progress")
                return
            try:
                state = await handle.current_state()
                meta = await handle.metadata()
            except Exception as e:
                log.warning("Could not read state from %r: %s", handle, e)
                return
            if handle is not self.handle:
                return
            data = {
                "title": meta.get("title"),
                "artworkUrl": meta.get("artworkUrl"),
                "siteUrl": self.page.url,
                "siteIcon": self.page.favicon,
                "state": state,
            }
            try:
                await self.emit(SESSION_UPDATE, data)
                self._sent_any = True
            except Exception as e:
                log.debug("Snapshot not delivered: %s", e)

    async def _update_after_seek(self):
        try:
            await asyncio.wait_for(self._seeked.wait(), timeout=self.seek_settle)
        except asyncio.TimeoutError:
            pass
        await self.send_update()

    # ── Commands ──

    async def _seek_to(self, handle, seconds: float):
        self._seeked.clear()
        if await handle.seek(seconds) and not handle.is_virtual:
            self._spawn(self._update_after_seek())

    async def handle_command(self, verb: str, args: dict | None = None) -> bool:
        """Execute a routed command.  False only if nothing is attached."""
        args = args or {}
        handle = self.handle
        if handle is None:
            log.warning("No media source for control command: %s", verb)
            return False

        log.debug("Control command %s %s (virtual=%s)", verb, args, handle.is_virtual)
        try:
            if verb == "toggle":
                state = await handle.current_state()
                if state["paused"]:
                    await handle.play()
                else:
                    await handle.pause()
            elif verb == "seek":
                state = await handle.current_state()
                await self._seek_to(handle, state["currentTime"] + float(args.get("delta") or 0))
            elif verb == "setTime":
                if args.get("time") is not None:
                    await self._seek_to(handle, float(args["time"]))
            elif verb == "setVolume":
                if args.get("volume") is not None:
                    await handle.set_volume(float(args["volume"]))
            elif verb == "mute":
                muted = args.get("muted")
                if muted is None:
                    muted = not (await handle.current_state())["muted"]
                await handle.set_muted(bool(muted))
            elif verb == "previousTrack":
                await handle.previous_track()
            elif verb == "nextTrack":
                await handle.next_track()
            elif verb == "beginSeek":
                self.seek_in_progress = True
                log.debug("beginSeek: suppressing snapshots")
            elif verb == "endSeek":
                self.seek_in_progress = False
                log.debug("endSeek: resuming snapshots")
                await self.send_update()
            else:
                log.warning("Unknown control command: %s", verb)
        except Exception as e:
            log.error("Error executing control command %s: %s", verb, e)
        return True
