#!/usr/bin/env python3
# MediaHub
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MediaHub Agent Host (mediahub-agent)

Drives a selenium browser and keeps one SourceAdapter running per relevant
execution context.  Every scan interval it walks the open windows (context
groups) and their frames (contexts):

  - new context on a known media site, or with media elements → start adapter
  - context navigated to another URL → restart its adapter
  - frame or window gone → stop adapter(s); a closed window also closes its
    group's link, which tells the coordinator to drop the whole group

Config (agent section): coordinator_url, browser, scan_interval, media_sites,
start_urls, plus the adapter timing keys.
"""

import asyncio
import itertools
import logging
import signal
from urllib.parse import urlparse

from selenium import webdriver

from ..lib.config import cfg, setup_logging
from ..lib.protocol import AutomationFailure
from .adapter import SourceAdapter
from .link import GroupLink
from .profiles import load_profiles
from .selenium_page import Browser, SeleniumPage

logger = logging.getLogger("mediahub-agent")

SCAN_INTERVAL = 5.0
DEFAULT_MEDIA_SITES = ["spotify.com", "youtube.com", "music.youtube.com", "soundcloud.com"]


def context_id_for(frame_path: tuple) -> str:
    """'0' for the top document, '0.2.1' for nested frames."""
    return ".".join(["0", *(str(i) for i in frame_path)])


def is_media_site(url: str, sites) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == s or host.endswith("." + s) for s in sites)


class ContextGroup:
    """One browser window: its link and the adapters of its frames."""

    def __init__(self, group_id: str, window: str, link: GroupLink):
        self.group_id = group_id
        self.window = window
        self.link = link
        self.contexts: dict[str, tuple[SeleniumPage, SourceAdapter]] = {}


class ContextHost:
    def __init__(self, browser: Browser, *, coordinator_url: str | None = None,
                 scan_interval: float | None = None, media_sites=None,
                 page_factory=SeleniumPage, link_factory=GroupLink):
        self.browser = browser
        self.page_factory = page_factory
        self.link_factory = link_factory
        self.coordinator_url = coordinator_url
        self.scan_interval = scan_interval or float(
            cfg("agent", "scan_interval", default=SCAN_INTERVAL))
        self.media_sites = media_sites or cfg("agent", "media_sites", default=DEFAULT_MEDIA_SITES)
        self.profiles = load_profiles()
        self.groups: dict[str, ContextGroup] = {}
        self._group_ids = itertools.count(1)
        self._running = True

    def _adapter_options(self) -> dict:
        return {
            "coalesce": float(cfg("agent", "coalesce_ms", default=250)) / 1000,
            "retry_count": int(cfg("agent", "retry_count", default=5)),
            "retry_delay": float(cfg("agent", "retry_delay", default=2.0)),
            "settle_delay": float(cfg("agent", "settle_delay", default=0.1)),
            "poll_interval": float(cfg("agent", "poll_interval", default=1.0)),
        }

    # ── Scanning ──

    async def scan_once(self):
        windows = await self.browser.window_handles()

        for window in list(self.groups):
            if window not in windows:
                await self._close_group(self.groups.pop(window))

        for window in windows:
            group = self.groups.get(window)
            if group is None:
                group_id = f"tab{next(self._group_ids)}"
                link = self.link_factory(group_id, self.coordinator_url)
                group = ContextGroup(group_id, window, link)
                group.link.start()
                self.groups[window] = group
                logger.info("New context group %s", group_id)
            try:
                await self._scan_group(group)
            except AutomationFailure as e:
                logger.debug("Scan of %s failed: %s", group.group_id, e)

    async def _scan_group(self, group: ContextGroup):
        found = await self.browser.list_contexts(group.window)
        live = set()
        for frame_path, url in found:
            ctx = context_id_for(frame_path)
            live.add(ctx)
            existing = group.contexts.get(ctx)
            if existing is not None:
                page, _ = existing
                if page.url == url:
                    continue
                logger.info("%s:%s navigated to %s", group.group_id, ctx, url)
                await self._stop_context(group, ctx)
            await self._maybe_start(group, ctx, frame_path, url)

        for ctx in list(group.contexts):
            if ctx not in live:
                await self._stop_context(group, ctx)

    async def _maybe_start(self, group: ContextGroup, ctx: str, frame_path: tuple, url: str):
        if not url.startswith(("http://", "https://")):
            return
        page = self.page_factory(self.browser, group.window, frame_path, url)
        if not is_media_site(url, self.media_sites) and await page.media_count() == 0:
            return
        await page.refresh()
        adapter = SourceAdapter(page, group.link.emitter(ctx), profiles=self.profiles,
                                **self._adapter_options())
        group.link.attach(ctx, adapter)
        group.contexts[ctx] = (page, adapter)
        logger.info("Adapter started in %s:%s (%s)", group.group_id, ctx, page.hostname)
        await adapter.start()

    async def _stop_context(self, group: ContextGroup, ctx: str):
        entry = group.contexts.pop(ctx, None)
        if entry is None:
            return
        _, adapter = entry
        await adapter.stop()
        group.link.detach(ctx)
        logger.info("Adapter stopped in %s:%s", group.group_id, ctx)

    async def _close_group(self, group: ContextGroup):
        for ctx in list(group.contexts):
            await self._stop_context(group, ctx)
        await group.link.stop()
        logger.info("Context group %s closed", group.group_id)

    # ── Lifecycle ──

    async def run(self):
        logger.info("Scanning browser every %.1fs", self.scan_interval)
        while self._running:
            try:
                await self.scan_once()
            except AutomationFailure as e:
                logger.warning("Browser scan failed: %s", e)
            await asyncio.sleep(self.scan_interval)

    async def shutdown(self):
        self._running = False
        for window in list(self.groups):
            await self._close_group(self.groups.pop(window))


def create_driver(browser: str | None = None):
    browser = (browser or cfg("agent", "browser", default="chrome")).lower()
    if browser == "firefox":
        return webdriver.Firefox()
    options = webdriver.ChromeOptions()
    options.add_argument("--autoplay-policy=no-user-gesture-required")
    return webdriver.Chrome(options=options)


async def _main():
    browser = Browser(create_driver())

    def _open(driver, url):
        driver.switch_to.new_window("tab")
        driver.get(url)

    for url in cfg("agent", "start_urls", default=[]) or []:
        await browser.call(_open, url)

    host = ContextHost(browser)
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    runner = asyncio.create_task(host.run())
    await stop.wait()
    logger.info("Shutting down")
    runner.cancel()
    try:
        await runner
    except asyncio.CancelledError:
        pass
    await host.shutdown()
    browser.shutdown()


def main():
    setup_logging()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
