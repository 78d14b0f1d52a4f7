import asyncio

from aiohttp import web
from aiohttp.test_utils import TestServer

from mediahub.coordinator import Coordinator, create_app
from mediahub.lib.protocol import SESSIONS_INIT
from mediahub.surface.client import SurfaceClient, http_base


async def _until(predicate, timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def test_http_base() -> None:
    assert http_base("ws://hub:8780") == "http://hub:8780"
    assert http_base("wss://hub") == "https://hub"
    assert http_base("http://hub") == "http://hub"


def test_rejected_handshake_is_retried() -> None:
    async def _run() -> None:
        hits: list[str] = []

        async def reject(request: web.Request) -> web.Response:
            hits.append(request.path)
            raise web.HTTPBadGateway()

        app = web.Application()
        app.router.add_get("/ws", reject)
        async with TestServer(app) as server:
            client = SurfaceClient(f"ws://{server.host}:{server.port}", reconnect_delay=0.05)
            task = asyncio.create_task(client.run())
            await _until(lambda: len(hits) >= 3)
            assert not task.done()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    asyncio.run(_run())


def test_mirror_receives_initial_snapshot() -> None:
    async def _run() -> None:
        coordinator = Coordinator(throttle_ms=0, ack_timeout=0.5, seek_step=10)
        async with TestServer(create_app(coordinator)) as server:
            client = SurfaceClient(f"ws://{server.host}:{server.port}", reconnect_delay=0.05)
            seen: list[str] = []
            task = asyncio.create_task(client.run(lambda surface, msg: seen.append(msg["type"])))
            await _until(lambda: seen == [SESSIONS_INIT])
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    asyncio.run(_run())
