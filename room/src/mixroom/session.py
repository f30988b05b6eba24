"""Room session actor.

A :class:`RoomSession` plays exactly one role per room. As the host it owns
the membership table, the dedup cache and the room sequence; as a participant
it owns a view of the membership, a dedup cache and a reorder buffer. All of
that state is touched only from the session's own loop task, which consumes a
single inbox fed by the transport receive pump, the presence timer and the
public commands.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Iterable, List

from .address import RoomAddress, format_address, parse_address
from .config import RoomConfig
from .dedup import DedupCache
from .envelope import (
    Envelope,
    EnvelopeType,
    ProtocolError,
    WelcomeBody,
    decode_envelope,
    encode_envelope,
    unpack_member,
    unpack_welcome,
)
from .hub import EventHub
from .log import EventKind, RoomEvent, _now_ms
from .membership import MembershipTable, UsernameConflict, validate_username
from .presence import PresenceMonitor
from .router import HostRouter, Outbound, Release, ReorderBuffer
from .transport import Transport, TransportError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    HOST = "host"
    PARTICIPANT = "participant"


class SessionState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class CloseReason:
    LEFT = "left"
    ROOM_CLOSED = "room_closed"
    EVICTED = "evicted"
    TRANSPORT_LOST = "transport_lost"
    JOIN_FAILED = "join_failed"


class SessionError(RuntimeError):
    """Raised when the session API is used in the wrong role or state."""


class JoinError(Exception):
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    CLOSED = "closed"

    def __init__(self, reason: str, message: str, *, code: str | None = None) -> None:
        self.reason = reason
        self.code = code
        super().__init__(message)


class RoomSession:
    def __init__(
        self,
        transport: Transport,
        config: RoomConfig | None = None,
        *,
        now_func=_now_ms,
    ) -> None:
        self.transport = transport
        self.config = config or RoomConfig()
        self.events = EventHub()
        self.members = MembershipTable()
        self.dedup = DedupCache(self.config.dedup_capacity)
        self.presence = PresenceMonitor(self.config.presence, now_func=now_func)
        self.role: Role | None = None
        self.state = SessionState.IDLE
        self.address: RoomAddress | None = None
        self.room_address: RoomAddress | None = None
        self.username: str | None = None
        self.router: HostRouter | None = None
        self.reorder: ReorderBuffer | None = None
        self.welcome: WelcomeBody | None = None
        self.close_reason: str | None = None
        self.failure: BaseException | None = None
        self._now = now_func
        self._sequence = 0
        self._inbox: asyncio.Queue[tuple] | None = None
        self._loop_task: asyncio.Task | None = None
        self._pump_task: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self._joined: asyncio.Future | None = None
        self._join_envelope: Envelope | None = None
        self._join_retry_at_ms: int | None = None

    # --- public API ---

    @property
    def room_seq(self) -> int | None:
        """Last room sequence assigned (host) or released (participant)."""

        if self.router is not None:
            return self.router.room_seq
        if self.reorder is not None:
            return self.reorder.last_released
        return None

    async def create(self) -> RoomAddress:
        self._require_idle()
        self.role = Role.HOST
        self.address = self.transport.self_address()
        self.room_address = self.address
        self.router = HostRouter(self.room_address, history_limit=self.config.history_limit)
        self.state = SessionState.ACTIVE
        self._start()
        logger.info("room created at %s", format_address(self.room_address))
        return self.room_address

    async def join(self, room_address: RoomAddress | str, username: str) -> None:
        """Join the room hosted at ``room_address``.

        Blocks until the host's welcome arrives. Raises :class:`JoinError` when
        the host rejects the join or stays silent for ``join_timeout_s``.
        """

        self._require_idle()
        if isinstance(room_address, str):
            room_address = parse_address(room_address)
        validate_username(username)
        self.role = Role.PARTICIPANT
        self.address = self.transport.self_address()
        self.room_address = room_address
        self.username = username
        self.reorder = ReorderBuffer(self.config.reorder_window, self.config.reorder_timeout_ms)
        self._joined = asyncio.get_running_loop().create_future()
        self._join_envelope = Envelope(
            type=EnvelopeType.JOIN,
            sender=self.address,
            sequence=self._next_sequence(),
            timestamp_ms=self._now(),
            username=username,
        )
        self._join_retry_at_ms = self._now()
        self.state = SessionState.JOINING
        self._start()

        try:
            await asyncio.wait_for(asyncio.shield(self._joined), self.config.join_timeout_s)
        except asyncio.TimeoutError:
            self._joined.cancel()
            await self._stop(CloseReason.JOIN_FAILED)
            raise JoinError(
                JoinError.TIMEOUT,
                f"no welcome from {format_address(room_address)} within {self.config.join_timeout_s:g}s",
            ) from None

    async def send_chat(self, text: str) -> None:
        if self.role is not Role.PARTICIPANT:
            raise SessionError("only participants send chat; the host relays")
        if self.state is not SessionState.ACTIVE:
            raise SessionError(f"cannot send chat while {self.state.value}")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("chat text must be a non-empty string")
        if len(text.encode("utf-8")) > self.config.max_chat_bytes:
            raise ValueError(f"chat text exceeds {self.config.max_chat_bytes} bytes")
        done = asyncio.get_running_loop().create_future()
        await self._inbox.put(("chat", text, done))
        await done

    async def leave(self) -> None:
        """Send a best-effort leave and stop the session loop."""

        if self.state is SessionState.CLOSED:
            return
        if self._loop_task is None or self._loop_task.done():
            self._finish(CloseReason.LEFT)
            self._closed.set()
            return
        await self._inbox.put(("leave",))
        await self.wait_closed()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # --- loop plumbing ---

    def _require_idle(self) -> None:
        if self.state is not SessionState.IDLE:
            raise SessionError(f"session already {self.state.value}")

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _start(self) -> None:
        self._inbox = asyncio.Queue(maxsize=self.config.inbox_size)
        self._pump_task = asyncio.create_task(self._pump())
        self.presence.start_timer(self._post_tick)
        self._loop_task = asyncio.create_task(self._run())

    async def _stop(self, reason: str) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            await self._inbox.put(("stop", reason))
        await self.wait_closed()

    def _post_tick(self) -> None:
        try:
            self._inbox.put_nowait(("tick",))
        except asyncio.QueueFull:
            logger.debug("inbox full, skipping presence tick")

    async def _pump(self) -> None:
        while True:
            try:
                sender, data = await self.transport.receive()
            except TransportError as exc:
                await self._inbox.put(("transport_lost", exc))
                return
            except Exception as exc:
                logger.exception("transport receive failed")
                await self._inbox.put(("transport_lost", TransportError(f"receive failed: {exc}")))
                return
            await self._inbox.put(("packet", sender, data))

    async def _run(self) -> None:
        try:
            while self.state is not SessionState.CLOSED:
                try:
                    item = await asyncio.wait_for(self._inbox.get(), self._wait_timeout())
                except asyncio.TimeoutError:
                    item = None
                if item is not None:
                    await self._dispatch(item)
                if self.state is not SessionState.CLOSED:
                    await self._on_deadlines()
        finally:
            await self._teardown()

    def _wait_timeout(self) -> float | None:
        deadlines: List[int] = []
        if self.state is SessionState.JOINING and self._join_retry_at_ms is not None:
            deadlines.append(self._join_retry_at_ms)
        if self.state is SessionState.ACTIVE and self.reorder is not None:
            deadline = self.reorder.deadline_ms()
            if deadline is not None:
                deadlines.append(deadline)
        if not deadlines:
            return None
        return max(0.0, (min(deadlines) - self._now()) / 1000)

    async def _dispatch(self, item: tuple) -> None:
        kind = item[0]
        if kind == "packet":
            await self._on_packet(item[1], item[2])
        elif kind == "tick":
            await self._on_tick()
        elif kind == "chat":
            await self._on_chat_command(item[1], item[2])
        elif kind == "leave":
            await self._drain_and_leave()
        elif kind == "stop":
            self._finish(item[1])
        elif kind == "transport_lost":
            self.failure = item[1]
            logger.error("transport lost: %s", item[1])
            self._finish(CloseReason.TRANSPORT_LOST)

    async def _on_deadlines(self) -> None:
        now = self._now()
        if (
            self.state is SessionState.JOINING
            and self._join_retry_at_ms is not None
            and now >= self._join_retry_at_ms
        ):
            self._join_retry_at_ms = now + self.config.join_retry_interval_ms
            logger.debug("sending join to %s", self.room_address)
            await self._send(self.room_address, self._join_envelope)
        if self.state is SessionState.ACTIVE and self.reorder is not None:
            await self._apply_releases(self.reorder.expire(now))

    def _finish(self, reason: str) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.close_reason = reason
        if reason != CloseReason.JOIN_FAILED:
            self._emit(RoomEvent(EventKind.CLOSED, timestamp_ms=self._now(), reason=reason))

    async def _teardown(self) -> None:
        if self.state is not SessionState.CLOSED:
            self._finish(CloseReason.LEFT)
        await self.presence.stop_timer()
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if item[0] == "chat" and not item[2].done():
                item[2].set_exception(SessionError("session closed"))
        if self._joined is not None and not self._joined.done():
            if isinstance(self.failure, TransportError):
                self._joined.set_exception(self.failure)
            else:
                self._joined.set_exception(JoinError(JoinError.CLOSED, "session closed before joining"))
        self._closed.set()

    def _emit(self, event: RoomEvent) -> None:
        self.events.broadcast(event)

    async def _send(self, address: RoomAddress, envelope: Envelope) -> None:
        try:
            data = encode_envelope(envelope)
        except ValueError as exc:
            logger.error("cannot send %s to %s: %s", envelope.type.value, address, exc)
            return
        try:
            await self.transport.send(address, data)
        except TransportError as exc:
            logger.warning("send of %s to %s failed: %s", envelope.type.value, address, exc)

    async def _send_all(self, outbound: Iterable[Outbound]) -> None:
        for item in outbound:
            await self._send(item.address, item.envelope)

    # --- inbound ---

    async def _on_packet(self, sender: RoomAddress, data: bytes) -> None:
        try:
            envelope = decode_envelope(data)
        except ProtocolError as exc:
            logger.debug("discarding packet from %s: %s", sender, exc)
            return
        if self.role is Role.HOST:
            await self._host_receive(sender, envelope)
        else:
            await self._participant_receive(sender, envelope)

    async def _on_tick(self) -> None:
        now = self._now()
        if self.role is Role.HOST:
            for record in self.presence.evict_stale(self.members, now):
                leave, outbound = self.router.announce_leave(record, self.members, now)
                self._emit(
                    RoomEvent(
                        EventKind.LEAVE,
                        username=record.username,
                        room_seq=leave.room_seq,
                        timestamp_ms=now,
                        reason="timeout",
                    )
                )
                await self._send_all(outbound)
        elif self.state is SessionState.ACTIVE and self.presence.heartbeat_due():
            heartbeat = Envelope(
                type=EnvelopeType.HEARTBEAT,
                sender=self.address,
                sequence=self._next_sequence(),
                timestamp_ms=now,
            )
            await self._send(self.room_address, heartbeat)

    async def _on_chat_command(self, text: str, done: asyncio.Future) -> None:
        if self.state is not SessionState.ACTIVE:
            if not done.done():
                done.set_exception(SessionError(f"cannot send chat while {self.state.value}"))
            return
        chat = Envelope(
            type=EnvelopeType.CHAT,
            sender=self.address,
            sequence=self._next_sequence(),
            timestamp_ms=self._now(),
            payload=text.encode("utf-8"),
        )
        self.presence.note_sent()
        await self._send(self.room_address, chat)
        if not done.done():
            done.set_result(None)

    async def _drain_and_leave(self) -> None:
        self.state = SessionState.DRAINING
        now = self._now()
        if self.role is Role.HOST:
            outbound = self.router.close_room(self.members, now)
        else:
            leave = Envelope(
                type=EnvelopeType.LEAVE,
                sender=self.address,
                sequence=self._next_sequence(),
                timestamp_ms=now,
            )
            outbound = [Outbound(self.room_address, leave)]
        try:
            await asyncio.wait_for(self._send_all(outbound), self.config.leave_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("leave not delivered to the transport within %.1fs", self.config.leave_timeout_s)
        self._finish(CloseReason.LEFT)

    # --- host role ---

    async def _host_receive(self, sender: RoomAddress, envelope: Envelope) -> None:
        if envelope.sender != sender:
            logger.debug("discarding %s from %s claiming %s", envelope.type.value, sender, envelope.sender)
            return
        if envelope.room_seq is not None:
            logger.debug("discarding pre-stamped %s from %s", envelope.type.value, sender)
            return
        now = self._now()
        key = envelope.dedup_key

        if envelope.type is EnvelopeType.JOIN:
            if self.dedup.seen_before(key):
                if sender in self.members:
                    self.members.touch(sender, now)
                    await self._send(sender, self.router.welcome(self.members, now))
                return
            await self._host_join(envelope, now)
            return

        if self.dedup.check_and_record(key):
            logger.debug("duplicate %s %s", envelope.type.value, key)
            return

        if envelope.type is EnvelopeType.CHAT:
            await self._host_chat(envelope, now)
        elif envelope.type is EnvelopeType.LEAVE:
            await self._host_leave(envelope, now)
        elif envelope.type is EnvelopeType.HEARTBEAT:
            if not self.members.touch(sender, now):
                await self._send_all([self.router.eviction_notice(sender, now)])
        else:
            logger.debug("host ignoring %s from %s", envelope.type.value, sender)

    async def _host_join(self, envelope: Envelope, now: int) -> None:
        sender = envelope.sender
        if sender in self.members:
            self.dedup.record(envelope.dedup_key)
            self.members.touch(sender, now)
            await self._send(sender, self.router.welcome(self.members, now))
            return
        try:
            validate_username(envelope.username)
            record = self.members.join(sender, envelope.username, now)
        except UsernameConflict as exc:
            logger.info("rejecting join from %s: %s", sender, exc)
            await self._send(sender, self.router.reject("username_conflict", str(exc), now))
            return
        except ValueError as exc:
            logger.info("rejecting join from %s: %s", sender, exc)
            await self._send(sender, self.router.reject("invalid_username", str(exc), now))
            return

        self.dedup.record(envelope.dedup_key)
        announce, outbound = self.router.admit(record, envelope, self.members, now)
        logger.info("%s joined (%d members)", record.username, len(self.members))
        self._emit(
            RoomEvent(EventKind.JOIN, username=record.username, room_seq=announce.room_seq, timestamp_ms=now)
        )
        await self._send_all(outbound)

    async def _host_chat(self, envelope: Envelope, now: int) -> None:
        if not self.members.touch(envelope.sender, now):
            logger.debug("chat from non-member %s", envelope.sender)
            await self._send_all([self.router.eviction_notice(envelope.sender, now)])
            return
        record = self.members.get(envelope.sender)
        relayed, outbound = self.router.relay_chat(envelope, record, self.members, now)
        self._emit(
            RoomEvent(
                EventKind.CHAT,
                username=record.username,
                text=relayed.text,
                room_seq=relayed.room_seq,
                timestamp_ms=relayed.timestamp_ms,
            )
        )
        await self._send_all(outbound)

    async def _host_leave(self, envelope: Envelope, now: int) -> None:
        record = self.members.leave(envelope.sender)
        if record is None:
            logger.debug("leave from non-member %s", envelope.sender)
            return
        leave, outbound = self.router.announce_leave(record, self.members, now, sequence=envelope.sequence)
        logger.info("%s left (%d members)", record.username, len(self.members))
        self._emit(
            RoomEvent(EventKind.LEAVE, username=record.username, room_seq=leave.room_seq, timestamp_ms=now, reason="left")
        )
        await self._send_all(outbound)

    # --- participant role ---

    async def _participant_receive(self, sender: RoomAddress, envelope: Envelope) -> None:
        if sender != self.room_address:
            logger.debug("discarding %s from non-host %s", envelope.type.value, sender)
            return
        if envelope.type is EnvelopeType.WELCOME:
            await self._on_welcome(envelope)
            return
        if envelope.room_seq is None:
            if envelope.type is EnvelopeType.LEAVE and envelope.sender == self.address:
                logger.warning("the host no longer lists this session as a member")
                self._finish(CloseReason.EVICTED)
            else:
                logger.debug("discarding unstamped %s from host", envelope.type.value)
            return

        key = (self.room_address, envelope.room_seq)
        if self.dedup.check_and_record(key):
            logger.debug("duplicate room_seq %d", envelope.room_seq)
            return
        releases = self.reorder.push(envelope, self._now())
        if self.state is SessionState.ACTIVE:
            await self._apply_releases(releases)

    async def _on_welcome(self, envelope: Envelope) -> None:
        if self.state is not SessionState.JOINING:
            logger.debug("ignoring welcome while %s", self.state.value)
            return
        try:
            body = unpack_welcome(envelope.payload)
        except ProtocolError as exc:
            logger.debug("discarding malformed welcome: %s", exc)
            return

        if body.error is not None:
            self._resolve_join(
                JoinError(JoinError.REJECTED, body.error.message or body.error.code, code=body.error.code)
            )
            self._finish(CloseReason.JOIN_FAILED)
            return
        if envelope.room_seq is None:
            logger.debug("discarding welcome without a room sequence baseline")
            return

        now = self._now()
        self.welcome = body
        self.members.clear()
        for entry in body.members:
            self.members.restore(entry.address, entry.username, entry.join_sequence, now)
        self.state = SessionState.ACTIVE
        self._join_retry_at_ms = None
        logger.info(
            "joined %s as %s (%d members)", format_address(self.room_address), self.username, len(self.members)
        )
        for item in body.history:
            self._emit(
                RoomEvent(
                    EventKind.CHAT,
                    username=item.username,
                    text=item.text,
                    room_seq=item.room_seq,
                    timestamp_ms=item.timestamp_ms,
                    replayed=True,
                )
            )
        self._resolve_join(None)
        await self._apply_releases(self.reorder.reset(envelope.room_seq, now))

    def _resolve_join(self, error: Exception | None) -> None:
        if self._joined is None or self._joined.done():
            return
        if error is None:
            self._joined.set_result(None)
        else:
            self._joined.set_exception(error)

    async def _apply_releases(self, releases: List[Release]) -> None:
        for release in releases:
            if self.state is not SessionState.ACTIVE:
                return
            self._apply(release)

    def _apply(self, release: Release) -> None:
        envelope = release.envelope
        text = ""
        if envelope.type is EnvelopeType.HEARTBEAT:
            return
        if envelope.type is EnvelopeType.JOIN:
            try:
                entry = unpack_member(envelope.payload)
            except ProtocolError as exc:
                logger.debug("discarding malformed join announcement: %s", exc)
                return
            self.members.restore(entry.address, entry.username, entry.join_sequence, self._now())
            kind, username = EventKind.JOIN, entry.username
        elif envelope.type is EnvelopeType.CHAT:
            kind, username, text = EventKind.CHAT, envelope.username, envelope.text
        elif envelope.type is EnvelopeType.LEAVE:
            if envelope.sender == self.room_address:
                logger.info("host closed the room")
                self._finish(CloseReason.ROOM_CLOSED)
                return
            record = self.members.leave(envelope.sender)
            kind, username = EventKind.LEAVE, envelope.username or (record.username if record else None)
        else:
            logger.debug("discarding stamped %s", envelope.type.value)
            return
        self._emit(
            RoomEvent(
                kind,
                username=username,
                text=text,
                room_seq=envelope.room_seq,
                timestamp_ms=envelope.timestamp_ms,
                forced=release.forced,
            )
        )
