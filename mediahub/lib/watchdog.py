"""systemd notify support: readiness, watchdog heartbeat and a status line.

No-ops when NOTIFY_SOCKET is unset (dev mode, tests).

Usage:
    from mediahub.lib.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(status=lambda: "3 sessions"))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(*fields: str) -> bool:
    """Send one datagram of newline-joined ``KEY=value`` fields.  True if sent."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr or not fields:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto("\n".join(fields).encode(), addr)
    except OSError as e:
        logger.warning("sd_notify(%s) failed: %s", fields[0].split("=")[0], e)
        return False
    finally:
        sock.close()
    return True


async def watchdog_loop(interval: int = 20, status=None):
    """READY=1 once, then WATCHDOG=1 every *interval* seconds.

    *status*, if given, is called on every beat and its text is sent as the
    unit's STATUS= line (shown by ``systemctl status``).
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    try:
        while True:
            fields = ["WATCHDOG=1"]
            if status is not None:
                fields.append(f"STATUS={status()}")
            sd_notify(*fields)
            await asyncio.sleep(interval)
    finally:
        sd_notify("STOPPING=1")
