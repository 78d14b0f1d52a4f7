#!/usr/bin/env python3
# MediaHub
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MediaHub Coordinator (mediahub-coordinator)

The one authoritative registry of media sessions.  Agents (one WebSocket per
context group) push snapshots in; control surfaces (WebSocket or HTTP) get a
full snapshot on connect and then throttled SESSION_UPDATED/SESSION_REMOVED
deltas.  Commands from surfaces are routed to the owning agent and must be
acknowledged; a context that cannot be reached loses its session.

Endpoints:
    GET    /agent?group=<id>        agent WebSocket
    GET    /ws                      control-surface WebSocket
    GET    /sessions                {"sessions": [...], "activeSessionId"}
    POST   /command                 {"sessionId", "verb", "args"}
    POST   /shortcut                {"command": "toggle-play" | "seek-forward" | "seek-backward"}
    DELETE /sessions/{session_id}
    GET    /status

Port: 8780
"""

import asyncio
import itertools
import json
import logging
import time

from aiohttp import WSMsgType, web

from .lib.config import cfg, setup_logging
from .lib.protocol import (
    ACK, CONTROL_COMMAND, GET_SESSIONS, MEDIA_CONTROL, SESSION_REMOVE,
    SESSION_REMOVED, SESSION_UPDATE, SESSION_UPDATED, SESSIONS_INIT, SHORTCUT,
    SHORTCUTS, VERBS, DeliveryFailure, MalformedSnapshot, normalize_state,
    session_id,
)
from .lib.watchdog import watchdog_loop

logger = logging.getLogger("mediahub-coordinator")

COORDINATOR_PORT = 8780
BROADCAST_THROTTLE_MS = 300
ACK_TIMEOUT = 2.0
SEEK_STEP = 10


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------
class Session:
    """One controllable media source in one context."""

    def __init__(self, group_id: str, context_id: str, state: dict,
                 last_active_at: float, title: str | None = None,
                 artwork_url: str | None = None, site_url: str | None = None,
                 site_icon: str | None = None):
        self.id = session_id(group_id, context_id)
        self.group_id = group_id
        self.context_id = context_id
        self.state = state
        self.last_active_at = last_active_at
        self.title = title
        self.artwork_url = artwork_url
        self.site_url = site_url
        self.site_icon = site_icon

    @property
    def playing(self) -> bool:
        return not self.state["paused"]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contextGroupId": self.group_id,
            "contextId": self.context_id,
            "title": self.title,
            "artworkUrl": self.artwork_url,
            "siteUrl": self.site_url,
            "siteIcon": self.site_icon,
            "state": dict(self.state),
            "lastActiveAt": self.last_active_at,
        }

    def __repr__(self):
        return f"Session({self.id!r}, playing={self.playing})"


class SessionRegistry:
    """Sessions keyed by id, the active pointer and per-session broadcast throttle.

    Every method is synchronous: callers in the event loop get each mutation
    as one indivisible step.
    """

    def __init__(self, throttle: float = BROADCAST_THROTTLE_MS / 1000,
                 clock=time.monotonic, wall_clock=time.time):
        self.throttle = throttle
        self._clock = clock
        self._wall_clock = wall_clock
        self.sessions: dict[str, Session] = {}
        self.active_id: str | None = None
        self._last_broadcast: dict[str, float] = {}

    def __len__(self):
        return len(self.sessions)

    def __contains__(self, sid):
        return sid in self.sessions

    def get(self, sid: str) -> Session | None:
        return self.sessions.get(sid)

    @property
    def active(self) -> Session | None:
        return self.sessions.get(self.active_id) if self.active_id else None

    def upsert(self, group_id: str, context_id: str, data: dict) -> tuple[Session, bool]:
        """Store a snapshot.  Returns (session, should_broadcast).

        Raises MalformedSnapshot (from normalize_state) if the state is
        unusable; the previous record is left untouched in that case.
        """
        state = normalize_state(data.get("state"))
        sid = session_id(group_id, context_id)
        prev = self.sessions.get(sid)
        now = self._wall_clock()
        playing = not state["paused"]

        # lastActiveAt moves only when playback starts
        became_active = playing and (prev is None or not prev.playing)
        if prev is None:
            last_active = now
        elif became_active:
            last_active = max(now, prev.last_active_at)
        else:
            last_active = prev.last_active_at

        title = data.get("title") or (prev.title if prev else None) or data.get("siteUrl")
        session = Session(
            group_id, context_id, state, last_active,
            title=title,
            artwork_url=data.get("artworkUrl"),
            site_url=data.get("siteUrl"),
            site_icon=data.get("siteIcon"),
        )
        self.sessions[sid] = session
        if became_active:
            self.active_id = sid

        t = self._clock()
        state_change = prev is None or prev.playing != playing
        last = self._last_broadcast.get(sid)
        broadcast = state_change or last is None or (t - last) >= self.throttle
        if broadcast:
            self._last_broadcast[sid] = t
        return session, broadcast

    def remove(self, sid: str) -> Session | None:
        session = self.sessions.pop(sid, None)
        if session is None:
            return None
        self._last_broadcast.pop(sid, None)
        if self.active_id == sid:
            self.active_id = self._most_recent()
        return session

    def ids_in_group(self, group_id: str) -> list[str]:
        return [sid for sid, s in self.sessions.items() if s.group_id == group_id]

    def _most_recent(self) -> str | None:
        best = None
        for session in self.sessions.values():
            if best is None or session.last_active_at > best.last_active_at:
                best = session
        return best.id if best else None

    def to_list(self) -> list[dict]:
        return [s.to_dict() for s in self.sessions.values()]


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------
class AgentChannel:
    """The link to one context group's agent, with request/ack correlation."""

    def __init__(self, group_id: str, send):
        self.group_id = group_id
        self._send = send
        self._pending: dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self.closed = False

    async def request(self, message: dict, timeout: float) -> bool:
        """Send *message* and wait for its ACK.  Raises DeliveryFailure."""
        if self.closed:
            raise DeliveryFailure(f"channel {self.group_id} closed")
        mid = f"{self.group_id}-{next(self._ids)}"
        fut = asyncio.get_running_loop().create_future()
        self._pending[mid] = fut
        try:
            await self._send({**message, "id": mid})
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise DeliveryFailure(f"no ack from {self.group_id} within {timeout}s") from None
        except DeliveryFailure:
            raise
        except Exception as e:
            raise DeliveryFailure(f"send to {self.group_id} failed: {e}") from e
        finally:
            self._pending.pop(mid, None)

    def resolve(self, mid, success) -> bool:
        fut = self._pending.get(mid)
        if fut is None or fut.done():
            logger.debug("Late or unknown ack %s on %s", mid, self.group_id)
            return False
        fut.set_result(bool(success))
        return True

    def close(self):
        self.closed = True
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(DeliveryFailure(f"channel {self.group_id} closed"))
        self._pending.clear()


class SurfaceSubscriber:
    """One control surface.  Messages are queued and written in order."""

    def __init__(self, send, name: str = "surface"):
        self._send = send
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._task: asyncio.Task | None = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._writer())

    def push(self, message: dict):
        if not self.closed:
            self.queue.put_nowait(message)

    async def drain(self):
        """Wait until everything queued so far has been written."""
        await self.queue.join()

    async def _writer(self):
        while True:
            message = await self.queue.get()
            try:
                if not self.closed:
                    await self._send(message)
            except Exception as e:
                logger.warning("Surface %s write failed: %s", self.name, e)
                self.closed = True
            finally:
                self.queue.task_done()

    async def close(self):
        self.closed = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------
class Coordinator:
    def __init__(self, *, throttle_ms: float | None = None,
                 ack_timeout: float | None = None, seek_step: float | None = None,
                 clock=time.monotonic, wall_clock=time.time):
        if throttle_ms is None:
            throttle_ms = cfg("coordinator", "broadcast_throttle_ms", default=BROADCAST_THROTTLE_MS)
        self.ack_timeout = ack_timeout if ack_timeout is not None else float(
            cfg("coordinator", "ack_timeout", default=ACK_TIMEOUT))
        self.seek_step = seek_step if seek_step is not None else float(
            cfg("coordinator", "seek_step", default=SEEK_STEP))
        self.registry = SessionRegistry(throttle_ms / 1000, clock, wall_clock)
        self.channels: dict[str, AgentChannel] = {}
        self.subscribers: set[SurfaceSubscriber] = set()

    # ── Agents ──

    def open_channel(self, group_id: str, send) -> AgentChannel:
        old = self.channels.get(group_id)
        if old is not None:
            logger.warning("Agent group %s reconnected, replacing old channel", group_id)
            old.close()
        channel = AgentChannel(group_id, send)
        self.channels[group_id] = channel
        logger.info("Agent group %s connected (%d groups)", group_id, len(self.channels))
        return channel

    def close_channel(self, channel: AgentChannel):
        channel.close()
        if self.channels.get(channel.group_id) is not channel:
            return
        del self.channels[channel.group_id]
        logger.info("Agent group %s disconnected", channel.group_id)
        self.remove_group(channel.group_id)

    def handle_agent_message(self, channel: AgentChannel, message: dict):
        """Apply one agent message.  Never awaits."""
        msg_type = message.get("type")
        if msg_type == ACK:
            channel.resolve(message.get("id"), message.get("success"))
            return

        context_id = message.get("contextId")
        if context_id is None:
            logger.warning("%s from %s without contextId", msg_type, channel.group_id)
            return
        context_id = str(context_id)

        if msg_type == SESSION_UPDATE:
            data = message.get("data")
            if not isinstance(data, dict):
                logger.warning("Malformed snapshot from %s:%s: data must be an object",
                               channel.group_id, context_id)
                return
            is_new = session_id(channel.group_id, context_id) not in self.registry
            try:
                session, broadcast = self.registry.upsert(channel.group_id, context_id, data)
            except MalformedSnapshot as e:
                logger.warning("Malformed snapshot from %s:%s: %s",
                               channel.group_id, context_id, e)
                return
            if is_new:
                logger.info("Session created: %s (%s)", session.id, session.title)
            if broadcast:
                self._publish({"type": SESSION_UPDATED, "session": session.to_dict()})
            else:
                logger.debug("Throttled update for %s", session.id)
        elif msg_type == SESSION_REMOVE:
            self.remove_session(session_id(channel.group_id, context_id), "agent request")
        else:
            logger.warning("Unknown agent message type from %s: %s", channel.group_id, msg_type)

    def remove_session(self, sid: str, reason: str = "") -> bool:
        session = self.registry.remove(sid)
        if session is None:
            return False
        logger.info("Session removed: %s (%s)", sid, reason or "unspecified")
        self._publish({"type": SESSION_REMOVED, "sessionId": sid})
        return True

    def remove_group(self, group_id: str):
        for sid in self.registry.ids_in_group(group_id):
            self.remove_session(sid, f"group {group_id} closed")

    # ── Surfaces ──

    def snapshot(self) -> list[dict]:
        return self.registry.to_list()

    def subscribe(self, subscriber: SurfaceSubscriber):
        self.subscribers.add(subscriber)
        subscriber.push({"type": SESSIONS_INIT, "sessions": self.snapshot()})
        subscriber.start()
        logger.info("Surface connected (%d total)", len(self.subscribers))

    def unsubscribe(self, subscriber: SurfaceSubscriber):
        self.subscribers.discard(subscriber)
        logger.info("Surface disconnected (%d remaining)", len(self.subscribers))

    def _publish(self, message: dict):
        disconnected = set()
        for subscriber in self.subscribers:
            if subscriber.closed:
                disconnected.add(subscriber)
            else:
                subscriber.push(message)
        self.subscribers -= disconnected

    # ── Commands ──

    async def forward_command(self, sid: str, verb: str, args: dict | None = None) -> bool:
        """Route a command to the session's agent.  True if it was acknowledged."""
        session = self.registry.get(sid)
        if session is None:
            logger.warning("Command %s for unknown session %s", verb, sid)
            return False
        if verb not in VERBS:
            logger.warning("Unknown command verb %s for %s", verb, sid)
            return False

        channel = self.channels.get(session.group_id)
        if channel is None:
            self.remove_session(sid, "no agent channel")
            return False

        logger.debug("-> %s %s %s", sid, verb, args or {})
        try:
            ok = await channel.request({
                "type": MEDIA_CONTROL,
                "contextId": session.context_id,
                "verb": verb,
                "args": args or {},
            }, self.ack_timeout)
        except DeliveryFailure as e:
            logger.warning("Delivery to %s failed: %s", sid, e)
            self.remove_session(sid, "delivery failure")
            return False
        if not ok:
            logger.info("Context %s has no media source attached (%s ignored)", sid, verb)
        return ok

    async def shortcut(self, command: str) -> bool:
        if command not in SHORTCUTS:
            logger.warning("Unknown shortcut: %s", command)
            return False
        sid = self.registry.active_id
        if sid is None:
            logger.info("No active session for shortcut: %s", command)
            return False
        if command == "toggle-play":
            return await self.forward_command(sid, "toggle")
        delta = self.seek_step if command == "seek-forward" else -self.seek_step
        return await self.forward_command(sid, "seek", {"delta": delta})

    def status(self) -> dict:
        return {
            "sessions": len(self.registry),
            "active_session": self.registry.active_id,
            "agent_groups": sorted(self.channels),
            "surfaces": len(self.subscribers),
        }

    async def shutdown(self):
        for subscriber in list(self.subscribers):
            await subscriber.close()
        self.subscribers.clear()
        for channel in list(self.channels.values()):
            channel.close()
        self.channels.clear()


# ---------------------------------------------------------------------------
# HTTP / WebSocket handlers
# ---------------------------------------------------------------------------
COORDINATOR_KEY = web.AppKey("coordinator", Coordinator)
WATCHDOG_KEY = web.AppKey("watchdog", asyncio.Task)


def _parse(raw: str) -> dict | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON on websocket: %.120s", raw)
        return None
    return data if isinstance(data, dict) else None


async def handle_agent_ws(request: web.Request) -> web.StreamResponse:
    """GET /agent?group=<id> — one agent per context group."""
    coordinator = request.app[COORDINATOR_KEY]
    group_id = request.query.get("group", "")
    if not group_id or ":" in group_id:
        return web.json_response({"error": "group is required and may not contain ':'"},
                                 status=400)

    ws = web.WebSocketResponse(heartbeat=20)
    await ws.prepare(request)
    channel = coordinator.open_channel(group_id, ws.send_json)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                data = _parse(msg.data)
                if data is not None:
                    coordinator.handle_agent_message(channel, data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("Agent %s websocket error: %s", group_id, ws.exception())
    finally:
        coordinator.close_channel(channel)
    return ws


async def handle_surface_ws(request: web.Request) -> web.WebSocketResponse:
    """GET /ws — SESSIONS_INIT then deltas; accepts commands and shortcuts."""
    coordinator = request.app[COORDINATOR_KEY]
    ws = web.WebSocketResponse(heartbeat=20)
    await ws.prepare(request)

    subscriber = SurfaceSubscriber(ws.send_json, name=request.remote or "surface")
    coordinator.subscribe(subscriber)
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = _parse(msg.data)
            if data is None:
                continue
            msg_type = data.get("type")
            if msg_type == GET_SESSIONS:
                subscriber.push({"type": SESSIONS_INIT, "sessions": coordinator.snapshot()})
            elif msg_type == CONTROL_COMMAND:
                cmd = data.get("data") or data
                if not isinstance(cmd, dict):
                    logger.warning("Malformed control command: %s", cmd)
                    continue
                await coordinator.forward_command(
                    cmd.get("sessionId", ""), cmd.get("verb", ""), cmd.get("args") or {})
            elif msg_type == SHORTCUT:
                await coordinator.shortcut(data.get("command", ""))
            else:
                logger.warning("Unknown surface message type: %s", msg_type)
    finally:
        coordinator.unsubscribe(subscriber)
        await subscriber.close()
    return ws


async def handle_sessions(request: web.Request) -> web.Response:
    """GET /sessions — full snapshot."""
    coordinator = request.app[COORDINATOR_KEY]
    return web.json_response({
        "sessions": coordinator.snapshot(),
        "activeSessionId": coordinator.registry.active_id,
    })


async def handle_command(request: web.Request) -> web.Response:
    """POST /command — route one command to a session."""
    coordinator = request.app[COORDINATOR_KEY]
    try:
        data = await request.json()
    except Exception:
        return web.json_response({"error": "invalid json"}, status=400)
    if not isinstance(data, dict):
        return web.json_response({"error": "expected an object"}, status=400)

    sid = data.get("sessionId")
    verb = data.get("verb")
    args = data.get("args") or {}
    if not sid or verb not in VERBS or not isinstance(args, dict):
        return web.json_response({"error": "sessionId and a valid verb required"}, status=400)
    if sid not in coordinator.registry:
        return web.json_response({"error": "unknown session"}, status=404)

    delivered = await coordinator.forward_command(sid, verb, args)
    return web.json_response({"status": "ok", "delivered": delivered})


async def handle_shortcut(request: web.Request) -> web.Response:
    """POST /shortcut — act on the active session."""
    coordinator = request.app[COORDINATOR_KEY]
    try:
        data = await request.json()
    except Exception:
        return web.json_response({"error": "invalid json"}, status=400)
    command = data.get("command") if isinstance(data, dict) else None
    if command not in SHORTCUTS:
        return web.json_response({"error": "invalid command"}, status=400)
    delivered = await coordinator.shortcut(command)
    return web.json_response({
        "status": "ok",
        "delivered": delivered,
        "activeSessionId": coordinator.registry.active_id,
    })


async def handle_remove(request: web.Request) -> web.Response:
    """DELETE /sessions/{session_id}"""
    coordinator = request.app[COORDINATOR_KEY]
    sid = request.match_info["session_id"]
    if not coordinator.remove_session(sid, "removed via HTTP"):
        return web.json_response({"error": "unknown session"}, status=404)
    return web.json_response({"status": "ok"})


async def handle_status(request: web.Request) -> web.Response:
    """GET /status — registry and connection counts."""
    return web.json_response(request.app[COORDINATOR_KEY].status())


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
async def on_startup(app: web.Application):
    coordinator = app[COORDINATOR_KEY]

    def summary() -> str:
        info = coordinator.status()
        return (f"{info['sessions']} sessions, "
                f"{len(info['agent_groups'])} agents, {info['surfaces']} surfaces")

    app[WATCHDOG_KEY] = asyncio.create_task(watchdog_loop(status=summary))


async def on_cleanup(app: web.Application):
    task = app.get(WATCHDOG_KEY)
    if task:
        task.cancel()
    await app[COORDINATOR_KEY].shutdown()


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    if not resp.prepared:
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def create_app(coordinator: Coordinator | None = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[COORDINATOR_KEY] = coordinator or Coordinator()
    app.router.add_get("/agent", handle_agent_ws)
    app.router.add_get("/ws", handle_surface_ws)
    app.router.add_get("/sessions", handle_sessions)
    app.router.add_delete("/sessions/{session_id}", handle_remove)
    app.router.add_post("/command", handle_command)
    app.router.add_post("/shortcut", handle_shortcut)
    app.router.add_get("/status", handle_status)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def main():
    setup_logging()
    app = create_app()
    web.run_app(
        app,
        host=cfg("coordinator", "host", default="127.0.0.1"),
        port=int(cfg("coordinator", "port", default=COORDINATOR_PORT)),
        print=lambda msg: logger.info(msg),
    )


if __name__ == "__main__":
    main()
