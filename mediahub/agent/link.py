"""
GroupLink — the WebSocket from one context group (browser tab) to the coordinator.

Every adapter in the tab shares the link; its messages carry the adapter's
contextId.  MEDIA_CONTROL requests are acknowledged with ACK{id, success}
as soon as they reach their context, then run on the matching adapter.  The
link reconnects forever; after each reconnect every attached adapter re-sends
its snapshot.
"""

import asyncio
import json
import logging
from urllib.parse import quote

import websockets

from ..lib.config import cfg
from ..lib.protocol import ACK, MEDIA_CONTROL, SESSION_REMOVE, DeliveryFailure

log = logging.getLogger(__name__)

DEFAULT_COORDINATOR_URL = "ws://127.0.0.1:8780"
RECONNECT_DELAY = 5


class GroupLink:
    def __init__(self, group_id: str, coordinator_url: str | None = None,
                 reconnect_delay: float = RECONNECT_DELAY):
        base = coordinator_url or cfg("agent", "coordinator_url", default=DEFAULT_COORDINATOR_URL)
        self.group_id = group_id
        self.url = f"{base.rstrip('/')}/agent?group={quote(group_id)}"
        self.reconnect_delay = reconnect_delay
        self.adapters: dict = {}
        self._ws = None
        self._task: asyncio.Task | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._commands: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ── Adapters ──

    def emitter(self, context_id: str):
        """Return the ``emit(msg_type, data)`` coroutine for one context."""
        async def emit(msg_type: str, data: dict):
            message = {"type": msg_type, "contextId": context_id}
            if msg_type != SESSION_REMOVE:
                message["data"] = data
            await self.send(message)
        return emit

    def attach(self, context_id: str, adapter):
        self.adapters[context_id] = adapter

    def detach(self, context_id: str):
        self._locks.pop(context_id, None)
        return self.adapters.pop(context_id, None)

    # ── Transport ──

    async def send(self, message: dict):
        ws = self._ws
        if ws is None:
            raise DeliveryFailure(f"{self.group_id}: not connected")
        await ws.send(json.dumps(message))
        log.debug("Sent %s for %s:%s", message["type"], self.group_id,
                  message.get("contextId"))

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._commands):
            task.cancel()
        if self._commands:
            await asyncio.gather(*self._commands, return_exceptions=True)

    async def run(self):
        """Connect, serve, reconnect."""
        while True:
            try:
                log.info("Connecting %s to coordinator at %s", self.group_id, self.url)
                ws = await websockets.connect(self.url)
                try:
                    self._ws = ws
                    log.info("Group %s connected", self.group_id)
                    for adapter in list(self.adapters.values()):
                        adapter.schedule_update()

                    async for message in ws:
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            log.warning("Invalid JSON from coordinator: %s", message)
                            continue
                        await self._dispatch(data)
                finally:
                    self._ws = None
                    await ws.close()
                log.warning("Coordinator closed %s, reconnecting in %ss...",
                            self.group_id, self.reconnect_delay)
            except websockets.exceptions.ConnectionClosed:
                log.warning("Coordinator connection for %s lost, reconnecting in %ss...",
                            self.group_id, self.reconnect_delay)
            except Exception as e:
                log.error("Error connecting %s to coordinator: %s, retrying in %ss...",
                          self.group_id, e, self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def _dispatch(self, data: dict):
        """ACK as soon as the command has reached its context, then run it.

        The ACK reports reachability (adapter present with a source attached),
        not the outcome.  Commands for one context run one at a time, in
        arrival order, so beginSeek/setTime/endSeek never interleave.
        """
        if data.get("type") != MEDIA_CONTROL:
            log.debug("Ignoring %s from coordinator", data.get("type"))
            return
        context_id = str(data.get("contextId"))
        verb = data.get("verb", "")
        adapter = self.adapters.get(context_id)
        if adapter is None:
            log.warning("MEDIA_CONTROL for unknown context %s:%s", self.group_id, context_id)
        success = adapter is not None and adapter.handle is not None
        if success:
            self._execute(context_id, adapter, verb, data.get("args") or {})
        try:
            await self.send({"type": ACK, "id": data.get("id"), "success": success})
        except (DeliveryFailure, websockets.exceptions.ConnectionClosed) as e:
            log.debug("ACK not delivered: %s", e)

    def _execute(self, context_id: str, adapter, verb: str, args: dict):
        lock = self._locks.setdefault(context_id, asyncio.Lock())

        async def _run():
            async with lock:
                try:
                    if not await adapter.handle_command(verb, args):
                        log.info("%s dropped in %s:%s: source went away",
                                 verb, self.group_id, context_id)
                except Exception as e:
                    log.error("Command %s failed in %s:%s: %s", verb,
                              self.group_id, context_id, e)

        task = asyncio.create_task(_run())
        self._commands.add(task)
        task.add_done_callback(self._commands.discard)
