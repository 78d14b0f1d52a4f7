#!/usr/bin/env python3
"""
mediahub-ctl — terminal control surface.

    mediahub-ctl list
    mediahub-ctl watch
    mediahub-ctl toggle [SESSION]
    mediahub-ctl seek -10 [SESSION]
    mediahub-ctl seek-to 1:30 [SESSION]
    mediahub-ctl volume 0.4 [SESSION]
    mediahub-ctl mute [--on | --off] [SESSION]
    mediahub-ctl next | prev [SESSION]
    mediahub-ctl shortcut toggle-play

SESSION is a session id or a 1-based index into the list order; it defaults
to the first listed session (playing first, then most recently active).
"""

import argparse
import asyncio
import logging
import sys

import aiohttp

from ..lib.config import setup_logging
from ..lib.protocol import SESSIONS_INIT, SHORTCUTS
from .client import SurfaceClient, fetch_sessions, post_command, post_shortcut
from .reconcile import ControlSurface, format_time


def parse_position(text: str) -> float:
    """'90', '1:30' or '1:02:03' → seconds."""
    total = 0.0
    for part in text.split(":"):
        total = total * 60 + float(part)
    return total


def resolve_session(surface: ControlSurface, selector: str | None) -> str | None:
    ordered = surface.ordered()
    if not selector:
        return ordered[0]["id"] if ordered else None
    if selector in surface.sessions:
        return selector
    if selector.isdigit() and 1 <= int(selector) <= len(ordered):
        return ordered[int(selector) - 1]["id"]
    return None


def print_sessions(surface: ControlSurface, active_id: str | None = None):
    ordered = surface.ordered()
    if not ordered:
        print("No media sessions")
        return
    for index, session in enumerate(ordered, 1):
        marker = "*" if session["id"] == active_id else " "
        print(f"{marker}{index:2d}  {surface.render(session['id'])}  [{session['id']}]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediahub-ctl", description="Control browser media sessions")
    parser.add_argument("--url", help="coordinator URL (default: surface.coordinator_url)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("list", help="list sessions")
    sub.add_parser("watch", help="follow session updates live")

    for name in ("toggle", "next", "prev"):
        p = sub.add_parser(name)
        p.add_argument("session", nargs="?")

    p = sub.add_parser("seek", help="seek by a relative number of seconds")
    p.add_argument("delta", type=float)
    p.add_argument("session", nargs="?")

    p = sub.add_parser("seek-to", help="seek to an absolute position (s, m:ss or h:mm:ss)")
    p.add_argument("position", type=parse_position)
    p.add_argument("session", nargs="?")

    p = sub.add_parser("volume", help="set volume 0..1")
    p.add_argument("volume", type=float)
    p.add_argument("session", nargs="?")

    p = sub.add_parser("mute", help="toggle mute, or force it with --on/--off")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--on", dest="muted", action="store_true", default=None)
    group.add_argument("--off", dest="muted", action="store_false", default=None)
    p.add_argument("session", nargs="?")

    p = sub.add_parser("shortcut", help="act on the active session")
    p.add_argument("command", choices=sorted(SHORTCUTS))
    return parser


_VERBS = {"toggle": "toggle", "next": "nextTrack", "prev": "previousTrack"}


def _command_for(args) -> tuple[str, dict]:
    if args.action in _VERBS:
        return _VERBS[args.action], {}
    if args.action == "seek":
        return "seek", {"delta": args.delta}
    if args.action == "seek-to":
        return "setTime", {"time": args.position}
    if args.action == "volume":
        return "setVolume", {"volume": args.volume}
    if args.action == "mute":
        return "mute", {} if args.muted is None else {"muted": args.muted}
    raise ValueError(args.action)


async def _watch(url: str | None):
    client = SurfaceClient(url)

    def on_change(surface, message):
        print(f"-- {message['type']}")
        print_sessions(surface)

    await client.run(on_change)


async def run(args) -> int:
    if args.action == "watch":
        await _watch(args.url)
        return 0
    if args.action == "shortcut":
        result = await post_shortcut(args.command, args.url)
        print("ok" if result.get("delivered") else f"not delivered: {result}")
        return 0 if result.get("delivered") else 1

    listing = await fetch_sessions(args.url)
    surface = ControlSurface(send=None)
    surface.apply({"type": SESSIONS_INIT, "sessions": listing.get("sessions", [])})
    if args.action == "list":
        print_sessions(surface, listing.get("activeSessionId"))
        return 0

    sid = resolve_session(surface, args.session)
    if sid is None:
        print("No such session", file=sys.stderr)
        return 1
    verb, command_args = _command_for(args)
    result = await post_command(sid, verb, command_args, args.url)
    if "error" in result:
        print(result["error"], file=sys.stderr)
        return 1
    if verb == "setTime":
        print(f"{sid}: seek to {format_time(command_args['time'])}")
    print("ok" if result.get("delivered") else "not delivered")
    return 0 if result.get("delivered") else 1


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        sys.exit(asyncio.run(run(args)))
    except aiohttp.ClientError as e:
        print(f"Cannot reach coordinator: {e}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
