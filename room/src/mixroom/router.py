"""Host-side fan-out and participant-side reordering of room traffic."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .address import RoomAddress
from .envelope import (
    MAX_ENVELOPE_BYTES,
    Envelope,
    EnvelopeType,
    WelcomeError,
    pack_member,
    pack_welcome,
)
from .log import ChatHistory, HistoryItem
from .membership import MembershipTable, ParticipantRecord

logger = logging.getLogger(__name__)

# Room for the envelope header around a base64-encoded welcome body.
WELCOME_PAYLOAD_BUDGET = (MAX_ENVELOPE_BYTES - 1024) * 3 // 4


@dataclass(frozen=True)
class Outbound:
    address: RoomAddress
    envelope: Envelope


@dataclass(frozen=True)
class Release:
    envelope: Envelope
    forced: bool = False


class HostRouter:
    """Assigns the room sequence and fans accepted messages out over the star.

    The author of a stamped message is left out of the content fan-out and
    gets a stamped heartbeat carrying the same room sequence instead, so its
    reorder buffer never waits on a slot it will not be sent.
    """

    def __init__(self, room_address: RoomAddress, *, history_limit: int = 100) -> None:
        self.room_address = room_address
        self.room_seq = 0
        self.history = ChatHistory(history_limit)
        self._local_seq = 0

    def next_local_seq(self) -> int:
        self._local_seq += 1
        return self._local_seq

    def stamp(self, envelope: Envelope) -> Envelope:
        self.room_seq += 1
        return envelope.stamped(self.room_seq)

    def marker(self, room_seq: int, now_ms: int) -> Envelope:
        return Envelope(
            type=EnvelopeType.HEARTBEAT,
            sender=self.room_address,
            sequence=self.next_local_seq(),
            timestamp_ms=now_ms,
            room_seq=room_seq,
        )

    def fan_out(
        self,
        stamped: Envelope,
        recipients: Iterable[RoomAddress],
        *,
        origin: RoomAddress | None,
        now_ms: int,
    ) -> List[Outbound]:
        outbound = [Outbound(address, stamped) for address in recipients if address != origin]
        if origin is not None:
            outbound.append(Outbound(origin, self.marker(stamped.room_seq, now_ms)))
        return outbound

    def welcome(self, members: MembershipTable, now_ms: int) -> Envelope:
        entries = members.entries()
        history = self.history.list_since(0)
        payload = pack_welcome(entries, history)
        while history and len(payload) > WELCOME_PAYLOAD_BUDGET:
            history = history[max(1, len(history) // 4) :]
            payload = pack_welcome(entries, history)
        if len(history) < len(self.history):
            logger.debug("welcome replays %d of %d history items", len(history), len(self.history))
        return Envelope(
            type=EnvelopeType.WELCOME,
            sender=self.room_address,
            sequence=self.next_local_seq(),
            timestamp_ms=now_ms,
            payload=payload,
            room_seq=self.room_seq,
        )

    def reject(self, code: str, message: str, now_ms: int) -> Envelope:
        return Envelope(
            type=EnvelopeType.WELCOME,
            sender=self.room_address,
            sequence=self.next_local_seq(),
            timestamp_ms=now_ms,
            payload=pack_welcome([], [], WelcomeError(code=code, message=message)),
        )

    def admit(
        self,
        record: ParticipantRecord,
        join: Envelope,
        members: MembershipTable,
        now_ms: int,
    ) -> Tuple[Envelope, List[Outbound]]:
        """Announce a newly admitted member and welcome it.

        The joiner's welcome baseline is the announcement's own room sequence,
        so it expects everything stamped after its admission.
        """

        announce = self.stamp(
            Envelope(
                type=EnvelopeType.JOIN,
                sender=record.address,
                sequence=join.sequence,
                timestamp_ms=now_ms,
                username=record.username,
                payload=pack_member(record.to_entry()),
            )
        )
        outbound = [Outbound(address, announce) for address in members.addresses(exclude=[record.address])]
        outbound.append(Outbound(record.address, self.welcome(members, now_ms)))
        return announce, outbound

    def relay_chat(
        self,
        chat: Envelope,
        record: ParticipantRecord,
        members: MembershipTable,
        now_ms: int,
    ) -> Tuple[Envelope, List[Outbound]]:
        relayed = self.stamp(
            Envelope(
                type=EnvelopeType.CHAT,
                sender=record.address,
                sequence=chat.sequence,
                timestamp_ms=chat.timestamp_ms,
                username=record.username,
                payload=chat.payload,
            )
        )
        self.history.append(
            HistoryItem(
                room_seq=relayed.room_seq,
                username=record.username,
                text=relayed.text,
                timestamp_ms=relayed.timestamp_ms,
            )
        )
        return relayed, self.fan_out(relayed, members.addresses(), origin=record.address, now_ms=now_ms)

    def announce_leave(
        self,
        record: ParticipantRecord,
        members: MembershipTable,
        now_ms: int,
        *,
        sequence: int = 0,
    ) -> Tuple[Envelope, List[Outbound]]:
        """Broadcast the departure of ``record``, already removed from ``members``."""

        leave = self.stamp(
            Envelope(
                type=EnvelopeType.LEAVE,
                sender=record.address,
                sequence=sequence,
                timestamp_ms=now_ms,
                username=record.username,
            )
        )
        return leave, self.fan_out(leave, members.addresses(), origin=None, now_ms=now_ms)

    def close_room(self, members: MembershipTable, now_ms: int) -> List[Outbound]:
        closing = self.stamp(
            Envelope(
                type=EnvelopeType.LEAVE,
                sender=self.room_address,
                sequence=self.next_local_seq(),
                timestamp_ms=now_ms,
            )
        )
        return self.fan_out(closing, members.addresses(), origin=None, now_ms=now_ms)

    def eviction_notice(self, address: RoomAddress, now_ms: int) -> Outbound:
        notice = Envelope(
            type=EnvelopeType.LEAVE,
            sender=address,
            sequence=self.next_local_seq(),
            timestamp_ms=now_ms,
        )
        return Outbound(address, notice)


class ReorderBuffer:
    """Releases host-stamped envelopes in strictly increasing room sequence.

    A gap is given up on once more than ``window`` envelopes are waiting behind
    it or ``timeout_ms`` has passed since it opened; the first envelope
    released past an abandoned gap is marked as forced. Until a baseline is
    set with :meth:`reset`, arrivals are only buffered.
    """

    def __init__(self, window: int = 32, timeout_ms: int = 5000) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        self.window = window
        self.timeout_ms = timeout_ms
        self._expected: int | None = None
        self._pending: Dict[int, Envelope] = {}
        self._gap_since_ms: int | None = None
        self.forced_releases = 0

    @property
    def expected(self) -> int | None:
        return self._expected

    @property
    def last_released(self) -> int | None:
        if self._expected is None:
            return None
        return self._expected - 1

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def reset(self, last_room_seq: int, now_ms: int) -> List[Release]:
        self._expected = last_room_seq + 1
        for room_seq in [seq for seq in self._pending if seq < self._expected]:
            del self._pending[room_seq]
        self._gap_since_ms = None
        return self._drain(now_ms)

    def push(self, envelope: Envelope, now_ms: int) -> List[Release]:
        room_seq = envelope.room_seq
        if room_seq is None:
            raise ValueError("only stamped envelopes can be reordered")
        if self._expected is not None and room_seq < self._expected:
            logger.debug("dropping late room_seq %d (expecting %d)", room_seq, self._expected)
            return []
        if room_seq in self._pending:
            return []
        self._pending[room_seq] = envelope

        if self._expected is None:
            while len(self._pending) > self.window:
                del self._pending[min(self._pending)]
            return []

        released = self._drain(now_ms)
        while len(self._pending) > self.window:
            released.extend(self._skip_gap(now_ms))
        return released

    def expire(self, now_ms: int) -> List[Release]:
        released: List[Release] = []
        deadline = self.deadline_ms()
        while deadline is not None and now_ms >= deadline:
            released.extend(self._skip_gap(now_ms))
            deadline = self.deadline_ms()
        return released

    def deadline_ms(self) -> int | None:
        if self._expected is None or self._gap_since_ms is None:
            return None
        return self._gap_since_ms + self.timeout_ms

    def _skip_gap(self, now_ms: int) -> List[Release]:
        first = min(self._pending)
        logger.debug("giving up on room_seq %d..%d", self._expected, first - 1)
        self._expected = first
        self._gap_since_ms = None
        self.forced_releases += 1
        return self._drain(now_ms, forced_first=True)

    def _drain(self, now_ms: int, *, forced_first: bool = False) -> List[Release]:
        released: List[Release] = []
        forced = forced_first
        while self._expected in self._pending:
            released.append(Release(self._pending.pop(self._expected), forced=forced))
            forced = False
            self._expected += 1
        if not self._pending:
            self._gap_since_ms = None
        elif released or self._gap_since_ms is None:
            self._gap_since_ms = now_ms
        return released
