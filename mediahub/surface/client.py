"""
Coordinator clients for control surfaces.

SurfaceClient keeps a ControlSurface mirror in sync over the /ws WebSocket
(reconnecting forever) and sends its commands back the same way.  The HTTP
helpers cover one-shot use: list sessions, post a command or shortcut.
"""

import asyncio
import json
import logging

import aiohttp
import websockets

from ..lib.config import cfg
from ..lib.protocol import CONTROL_COMMAND, SHORTCUT, DeliveryFailure
from .reconcile import OPTIMISTIC_WINDOW, ControlSurface

log = logging.getLogger(__name__)

DEFAULT_COORDINATOR_URL = "ws://127.0.0.1:8780"
RECONNECT_DELAY = 5
HTTP_TIMEOUT = aiohttp.ClientTimeout(total=5.0)


def coordinator_url(url: str | None = None) -> str:
    return (url or cfg("surface", "coordinator_url", default=DEFAULT_COORDINATOR_URL)).rstrip("/")


def http_base(url: str) -> str:
    """ws://host:port → http://host:port"""
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    return url


class SurfaceClient:
    def __init__(self, url: str | None = None, reconnect_delay: float = RECONNECT_DELAY):
        self.url = coordinator_url(url)
        self.reconnect_delay = reconnect_delay
        window_ms = cfg("surface", "optimistic_window_ms", default=OPTIMISTIC_WINDOW * 1000)
        self.surface = ControlSurface(self.send_command, optimistic_window=float(window_ms) / 1000)
        self._ws = None

    async def _send(self, message: dict):
        if self._ws is None:
            raise DeliveryFailure("not connected to coordinator")
        await self._ws.send(json.dumps(message))

    async def send_command(self, sid: str, verb: str, args: dict):
        await self._send({
            "type": CONTROL_COMMAND,
            "data": {"sessionId": sid, "verb": verb, "args": args},
        })

    async def shortcut(self, command: str):
        await self._send({"type": SHORTCUT, "command": command})

    async def run(self, on_change=None):
        """Mirror the coordinator forever; ``on_change(surface, message)`` after each update."""
        while True:
            try:
                log.info("Connecting to coordinator at %s/ws", self.url)
                ws = await websockets.connect(f"{self.url}/ws")
                try:
                    self._ws = ws
                    log.info("Connected to coordinator")
                    async for message in ws:
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            log.warning("Invalid JSON from coordinator: %s", message)
                            continue
                        if self.surface.apply(data) and on_change:
                            on_change(self.surface, data)
                finally:
                    self._ws = None
                    await ws.close()
            except websockets.exceptions.ConnectionClosed:
                log.warning("Coordinator connection closed, reconnecting in %ss...",
                            self.reconnect_delay)
            except Exception as e:
                log.error("Error connecting to coordinator: %s, retrying in %ss...",
                          e, self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)


# ---------------------------------------------------------------------------
# HTTP one-shots
# ---------------------------------------------------------------------------
async def fetch_sessions(url: str | None = None) -> dict:
    async with aiohttp.ClientSession(timeout=HTTP_TIMEOUT) as session:
        async with session.get(f"{http_base(coordinator_url(url))}/sessions") as resp:
            resp.raise_for_status()
            return await resp.json()


async def post_command(sid: str, verb: str, args: dict | None = None,
                       url: str | None = None) -> dict:
    async with aiohttp.ClientSession(timeout=HTTP_TIMEOUT) as session:
        async with session.post(
            f"{http_base(coordinator_url(url))}/command",
            json={"sessionId": sid, "verb": verb, "args": args or {}},
        ) as resp:
            return await resp.json()


async def post_shortcut(command: str, url: str | None = None) -> dict:
    async with aiohttp.ClientSession(timeout=HTTP_TIMEOUT) as session:
        async with session.post(
            f"{http_base(coordinator_url(url))}/shortcut", json={"command": command},
        ) as resp:
            return await resp.json()
