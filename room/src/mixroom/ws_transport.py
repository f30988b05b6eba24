"""Development relay that stands in for the mixnet, and its client transport.

The relay hands every websocket connection a fresh address on
``session.start`` and forwards opaque ``packet.send`` frames to whichever
connection owns the destination address. It keeps no history: packets for
unknown or departed addresses are dropped, just as the anonymous network
would lose them.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import random
from typing import Any, Callable, Dict

import aiohttp
from aiohttp import WSMsgType, web

from .address import MalformedAddress, RoomAddress, format_address, generate_address, parse_address
from .transport import Packet, TransportError

logger = logging.getLogger(__name__)

Enqueue = Callable[[dict], None]


class Relay:
    def __init__(self, *, max_delay_ms: int = 0, seed: int | None = None) -> None:
        if max_delay_ms < 0:
            raise ValueError("max_delay_ms must be non-negative")
        self.max_delay_ms = max_delay_ms
        self._rng = random.Random(seed)
        self._endpoints: Dict[RoomAddress, Enqueue] = {}
        self.routed = 0
        self.dropped = 0

    def register(self, enqueue: Enqueue) -> RoomAddress:
        address = generate_address(self._rng)
        while address in self._endpoints:
            address = generate_address(self._rng)
        self._endpoints[address] = enqueue
        return address

    def unregister(self, address: RoomAddress) -> None:
        self._endpoints.pop(address, None)

    def route(self, sender: RoomAddress, to: RoomAddress, data_b64: str) -> None:
        frame = {"v": 1, "t": "packet.deliver", "body": {"from": format_address(sender), "data": data_b64}}
        delay_ms = self._rng.randint(0, self.max_delay_ms) if self.max_delay_ms else 0
        if delay_ms:
            asyncio.get_running_loop().call_later(delay_ms / 1000, self._deliver, to, frame)
        else:
            self._deliver(to, frame)

    def _deliver(self, to: RoomAddress, frame: dict) -> None:
        enqueue = self._endpoints.get(to)
        if enqueue is None:
            self.dropped += 1
            return
        self.routed += 1
        enqueue(frame)

    def __len__(self) -> int:
        return len(self._endpoints)


RELAY_KEY = web.AppKey("relay", Relay)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    *,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    max_delay_ms: int = 0,
    seed: int | None = None,
) -> web.Application:
    app = web.Application()
    app[RELAY_KEY] = Relay(max_delay_ms=max_delay_ms, seed=seed)
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


class RelayConnection:
    """One attached websocket: its address, outbound queue and liveness."""

    def __init__(self, ws: web.WebSocketResponse, relay: Relay, ws_config: dict[str, Any]) -> None:
        self.ws = ws
        self.relay = relay
        self.ping_interval_s: float = ws_config["ping_interval_s"]
        self.ping_miss_limit: int = ws_config["ping_miss_limit"]
        self.address: RoomAddress | None = None
        self.outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
        self.idle_since = asyncio.get_running_loop().time()
        self.unanswered_pings = 0
        self._closing = False

    def touch(self) -> None:
        self.idle_since = asyncio.get_running_loop().time()
        self.unanswered_pings = 0

    def enqueue(self, frame: dict) -> None:
        try:
            self.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(self.abort("backpressure"))

    async def abort(self, message: str) -> None:
        if self._closing:
            return
        self._closing = True
        await self.ws.close(code=1011, message=message.encode("utf-8"))

    async def reply_error(self, message: str, frame: dict | None = None) -> None:
        request_id = frame.get("id") if frame is not None else None
        await self.ws.send_json(_error_frame("invalid_request", message, request_id=request_id))

    async def drain(self) -> None:
        try:
            while True:
                frame = await self.outbound.get()
                if frame is None:
                    return
                await self.ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def keepalive(self) -> None:
        try:
            while not self.ws.closed:
                await asyncio.sleep(self.ping_interval_s)
                if self.ws.closed:
                    return
                if asyncio.get_running_loop().time() - self.idle_since < self.ping_interval_s:
                    continue
                await self.ws.send_json({"v": 1, "t": "ping"})
                self.unanswered_pings += 1
                if self.unanswered_pings > self.ping_miss_limit:
                    await self.ws.close(code=1001, message=b"heartbeat timeout")
                    return
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def start(self, frame: Any) -> bool:
        if not isinstance(frame, dict) or frame.get("v") != 1:
            await self.reply_error("unsupported version")
            return False
        if frame.get("t") != "session.start":
            await self.reply_error("first frame must start session", frame)
            return False
        self.touch()
        self.address = self.relay.register(self.enqueue)
        logger.info("relay endpoint %s connected (%d attached)", self.address, len(self.relay))
        await self.ws.send_json(
            {"v": 1, "t": "session.ready", "id": frame.get("id"), "body": {"address": format_address(self.address)}}
        )
        return True

    async def handle(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            await self.reply_error("frame must be an object")
            return
        self.touch()
        if frame.get("v") != 1:
            await self.reply_error("unsupported version", frame)
            return
        frame_type = frame.get("t")
        if frame_type == "ping":
            await self.ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
        elif frame_type == "pong":
            return
        elif frame_type == "packet.send":
            await self._forward(frame)
        else:
            await self.reply_error("unknown frame type", frame)

    async def _forward(self, frame: dict) -> None:
        body = frame.get("body")
        if not isinstance(body, dict):
            await self.reply_error("body must be an object", frame)
            return
        data = body.get("data")
        try:
            to = parse_address(body.get("to"))
            if not isinstance(data, str):
                raise ValueError("data must be base64 text")
            base64.b64decode(data, validate=True)
        except (MalformedAddress, binascii.Error, ValueError) as exc:
            await self.reply_error(str(exc), frame)
            return
        self.relay.route(self.address, to, data)

    async def release(self) -> None:
        if self.address is not None:
            self.relay.unregister(self.address)
            logger.info("relay endpoint %s disconnected", self.address)
        try:
            self.outbound.put_nowait(None)
        except asyncio.QueueFull:
            pass


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]
    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    conn = RelayConnection(ws, request.app[RELAY_KEY], ws_config)
    tasks = [asyncio.create_task(conn.drain()), asyncio.create_task(conn.keepalive())]
    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            started = await conn.start(first_msg.json())
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not started:
            await ws.close()
            return ws

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    await conn.reply_error("malformed json")
                    continue
                await conn.handle(frame)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        for task in tasks:
            task.cancel()
        await conn.release()
        await asyncio.gather(*tasks, return_exceptions=True)

    return ws


class WebSocketTransport:
    """Transport over a relay websocket; one connection is one address."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        address: RoomAddress,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._ws = ws
        self._address = address
        self._owned_session = session
        self._closed = False

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> "WebSocketTransport":
        owned = session is None
        client = aiohttp.ClientSession() if session is None else session
        try:
            ws = await client.ws_connect(url, max_msg_size=1_048_576)
            await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {}})
            ready = await asyncio.wait_for(ws.receive_json(), timeout_s)
            if not isinstance(ready, dict) or ready.get("t") != "session.ready":
                raise TransportError(f"relay refused session: {ready!r}")
            address = parse_address((ready.get("body") or {}).get("address"))
        except (aiohttp.ClientError, asyncio.TimeoutError, MalformedAddress, ValueError, TypeError) as exc:
            if owned:
                await client.close()
            raise TransportError(f"cannot attach to relay at {url}: {exc}") from exc
        except TransportError:
            if owned:
                await client.close()
            raise
        logger.debug("attached to relay at %s as %s", url, address)
        return cls(ws, address, session=client if owned else None)

    def self_address(self) -> RoomAddress:
        return self._address

    async def send(self, address: RoomAddress, data: bytes) -> None:
        if self._closed or self._ws.closed:
            raise TransportError("relay connection is closed")
        frame = {
            "v": 1,
            "t": "packet.send",
            "body": {"to": format_address(address), "data": base64.b64encode(data).decode("ascii")},
        }
        try:
            await self._ws.send_json(frame)
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            raise TransportError(f"relay send failed: {exc}") from exc

    async def receive(self) -> Packet:
        while True:
            if self._closed:
                raise TransportError("relay connection is closed")
            msg = await self._ws.receive()
            if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR}:
                raise TransportError("relay connection closed")
            if msg.type != WSMsgType.TEXT:
                continue
            try:
                frame = msg.json()
            except ValueError:
                logger.debug("ignoring malformed relay frame")
                continue
            if not isinstance(frame, dict):
                continue
            frame_type = frame.get("t")
            body = frame.get("body") or {}
            if not isinstance(body, dict):
                logger.debug("ignoring relay frame with non-object body")
                continue
            if frame_type == "packet.deliver":
                try:
                    sender = parse_address(body.get("from"))
                    data = base64.b64decode(body.get("data", ""), validate=True)
                except (ValueError, TypeError) as exc:
                    logger.debug("ignoring bad delivery: %s", exc)
                    continue
                return sender, data
            if frame_type == "ping":
                try:
                    await self._ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                except (ConnectionResetError, aiohttp.ClientError) as exc:
                    raise TransportError(f"relay send failed: {exc}") from exc
            elif frame_type == "error":
                logger.warning("relay error: %s", body.get("message"))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()
        if self._owned_session is not None:
            await self._owned_session.close()
