"""Command line entry points: run the relay, host a room, or join one."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from typing import TextIO

from aiohttp import web

from .address import MalformedAddress, format_address, parse_address
from .config import load_room_config_from_env
from .log import EventKind, RoomEvent
from .membership import validate_username
from .session import CloseReason, JoinError, RoomSession, SessionError
from .transport import TransportError
from .ws_transport import WebSocketTransport, create_app

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "http://127.0.0.1:8080/v1/ws"
RELAY_URL_ENV = "MIXROOM_RELAY_URL"

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_TRANSPORT = 3
EXIT_JOIN_FAILED = 4
EXIT_EVICTED = 5


def render_event(event: RoomEvent) -> str:
    """Format a room event as one line of terminal output."""

    if event.kind is EventKind.CHAT:
        prefix = "[history] " if event.replayed else ""
        if event.forced:
            prefix += "[gap] "
        return f"{prefix}<{event.username}> {event.text}"
    if event.kind is EventKind.JOIN:
        return f"* {event.username} joined"
    if event.kind is EventKind.LEAVE:
        suffix = " (timed out)" if event.reason == "timeout" else ""
        return f"* {event.username} left{suffix}"
    return f"* session closed: {event.reason}"


def exit_code_for(session: RoomSession) -> int:
    if session.close_reason == CloseReason.EVICTED:
        return EXIT_EVICTED
    if session.close_reason == CloseReason.TRANSPORT_LOST:
        return EXIT_TRANSPORT
    return EXIT_OK


def _write(output: TextIO, line: str) -> None:
    output.write(line + "\n")
    output.flush()


def _fail(message: str) -> None:
    print(f"mixroom: {message}", file=sys.stderr)


def _leave_on_interrupt(session: RoomSession) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(session.leave()))
    except (NotImplementedError, RuntimeError):
        logger.debug("signal handlers unavailable; interrupt will not leave gracefully")


def _read_lines(stream: TextIO, lines: asyncio.Queue) -> None:
    loop = asyncio.get_running_loop()

    def run() -> None:
        try:
            for line in iter(stream.readline, ""):
                loop.call_soon_threadsafe(lines.put_nowait, line)
            loop.call_soon_threadsafe(lines.put_nowait, None)
        except RuntimeError:
            return

    threading.Thread(target=run, name="mixroom-stdin", daemon=True).start()


async def send_lines(session: RoomSession, lines: asyncio.Queue, output: TextIO | None = None) -> None:
    """Send each queued line as chat until end of input, then leave.

    The host does not echo a chat back to its author, so each sent line is
    written to ``output`` as soon as the transport accepts it.
    """

    while True:
        line = await lines.get()
        if line is None:
            break
        text = line.strip()
        if not text:
            continue
        try:
            await session.send_chat(text)
        except SessionError:
            return
        except ValueError as exc:
            _fail(f"not sent: {exc}")
            continue
        if output is not None:
            _write(output, f"<{session.username}> {text}")
    await session.leave()


async def _connect(url: str) -> WebSocketTransport | None:
    try:
        return await WebSocketTransport.connect(url)
    except TransportError as exc:
        _fail(str(exc))
        return None


async def run_host(relay_url: str, output: TextIO) -> int:
    config = load_room_config_from_env()
    transport = await _connect(relay_url)
    if transport is None:
        return EXIT_TRANSPORT
    session = RoomSession(transport, config)
    session.events.subscribe(lambda event: _write(output, render_event(event)))
    try:
        address = await session.create()
        _write(output, format_address(address))
        _leave_on_interrupt(session)
        await session.wait_closed()
    finally:
        await transport.close()
    return exit_code_for(session)


async def run_participant(relay_url: str, address: str, username: str, output: TextIO, stream: TextIO) -> int:
    config = load_room_config_from_env()
    transport = await _connect(relay_url)
    if transport is None:
        return EXIT_TRANSPORT
    session = RoomSession(transport, config)
    session.events.subscribe(lambda event: _write(output, render_event(event)))
    sender: asyncio.Task | None = None
    try:
        try:
            await session.join(address, username)
        except JoinError as exc:
            _fail(f"join failed ({exc.reason}): {exc}")
            return EXIT_JOIN_FAILED
        except TransportError as exc:
            _fail(str(exc))
            return EXIT_TRANSPORT
        _write(output, f"* joined as {username} ({len(session.members)} members)")
        _leave_on_interrupt(session)
        lines: asyncio.Queue = asyncio.Queue()
        _read_lines(stream, lines)
        sender = asyncio.create_task(send_lines(session, lines, output))
        await session.wait_closed()
    finally:
        if sender is not None:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
        await transport.close()
    return exit_code_for(session)


def _run_relay(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval, max_delay_ms=args.max_delay_ms)
    web.run_app(app, host=args.host, port=args.port)
    return EXIT_OK


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mixroom", description="Anonymous chat rooms over a mix network")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Log more (-v info, -vv debug)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    relay_url = os.environ.get(RELAY_URL_ENV) or DEFAULT_RELAY_URL

    relay_parser = subparsers.add_parser("relay", help="Run the development packet relay")
    relay_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    relay_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    relay_parser.add_argument("--ping-interval", type=int, default=30, help="Seconds between heartbeat pings")
    relay_parser.add_argument(
        "--max-delay-ms",
        type=int,
        default=0,
        help="Upper bound of the random per-packet delivery delay",
    )

    create_parser = subparsers.add_parser("create", help="Host a new room and print its address")
    create_parser.add_argument("--relay", default=relay_url, help="Relay websocket URL")

    join_parser = subparsers.add_parser("join", help="Join a room and chat from stdin")
    join_parser.add_argument("address", help="Room address printed by the host")
    join_parser.add_argument("username", help="Name shown to the room")
    join_parser.add_argument("--relay", default=relay_url, help="Relay websocket URL")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None, stream: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return EXIT_USAGE if exc.code else EXIT_OK

    _configure_logging(args.verbose)
    output = output or sys.stdout

    if args.command == "relay":
        return _run_relay(args)

    try:
        load_room_config_from_env()
        if args.command == "join":
            parse_address(args.address)
            validate_username(args.username)
    except MalformedAddress as exc:
        _fail(f"malformed room address: {exc}")
        return EXIT_USAGE
    except ValueError as exc:
        _fail(str(exc))
        return EXIT_USAGE

    try:
        if args.command == "create":
            return asyncio.run(run_host(args.relay, output))
        return asyncio.run(run_participant(args.relay, args.address, args.username, output, stream or sys.stdin))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
