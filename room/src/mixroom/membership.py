from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List

from .address import RoomAddress
from .envelope import MemberEntry

MAX_USERNAME_LENGTH = 32


class UsernameConflict(Exception):
    def __init__(self, username: str, holder: RoomAddress) -> None:
        self.username = username
        self.holder = holder
        super().__init__(f"username {username!r} is already taken")


def validate_username(username: str) -> str:
    if not isinstance(username, str) or not username:
        raise ValueError("username must be a non-empty string")
    if username != username.strip():
        raise ValueError("username must not start or end with whitespace")
    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
    if any(unicodedata.category(ch).startswith("C") for ch in username):
        raise ValueError("username must not contain control characters")
    return username


@dataclass
class ParticipantRecord:
    address: RoomAddress
    username: str
    join_sequence: int
    last_seen_ms: int

    def to_entry(self) -> MemberEntry:
        return MemberEntry(address=self.address, username=self.username, join_sequence=self.join_sequence)


class MembershipTable:
    """Live participants of one room, keyed by address and by username.

    The table is owned by a single session loop and is not safe to share.
    """

    def __init__(self) -> None:
        self._by_address: Dict[RoomAddress, ParticipantRecord] = {}
        self._by_username: Dict[str, RoomAddress] = {}
        self._next_join_sequence = 1

    def join(self, address: RoomAddress, username: str, now_ms: int) -> ParticipantRecord:
        existing = self._by_address.get(address)
        if existing is not None:
            existing.last_seen_ms = max(existing.last_seen_ms, now_ms)
            return existing
        holder = self._by_username.get(username)
        if holder is not None:
            raise UsernameConflict(username, holder)
        record = ParticipantRecord(
            address=address,
            username=username,
            join_sequence=self._next_join_sequence,
            last_seen_ms=now_ms,
        )
        self._next_join_sequence += 1
        self._insert(record)
        return record

    def restore(self, address: RoomAddress, username: str, join_sequence: int, now_ms: int) -> ParticipantRecord:
        """Insert a record learned from the host, replacing stale holders.

        The host is authoritative for participant views, so an older record
        with the same address or username is dropped.
        """

        self.leave(address)
        holder = self._by_username.get(username)
        if holder is not None:
            self.leave(holder)
        record = ParticipantRecord(
            address=address,
            username=username,
            join_sequence=join_sequence,
            last_seen_ms=now_ms,
        )
        self._next_join_sequence = max(self._next_join_sequence, join_sequence + 1)
        self._insert(record)
        return record

    def touch(self, address: RoomAddress, now_ms: int) -> bool:
        record = self._by_address.get(address)
        if record is None:
            return False
        record.last_seen_ms = max(record.last_seen_ms, now_ms)
        return True

    def evict_stale(self, now_ms: int, timeout_ms: int) -> List[ParticipantRecord]:
        stale = [record for record in self._by_address.values() if now_ms - record.last_seen_ms >= timeout_ms]
        stale.sort(key=lambda record: record.join_sequence)
        for record in stale:
            self._remove(record)
        return stale

    def leave(self, address: RoomAddress) -> ParticipantRecord | None:
        record = self._by_address.get(address)
        if record is None:
            return None
        self._remove(record)
        return record

    def get(self, address: RoomAddress) -> ParticipantRecord | None:
        return self._by_address.get(address)

    def by_username(self, username: str) -> ParticipantRecord | None:
        address = self._by_username.get(username)
        if address is None:
            return None
        return self._by_address.get(address)

    def records(self) -> List[ParticipantRecord]:
        return sorted(self._by_address.values(), key=lambda record: record.join_sequence)

    def entries(self) -> List[MemberEntry]:
        return [record.to_entry() for record in self.records()]

    def usernames(self) -> List[str]:
        return [record.username for record in self.records()]

    def addresses(self, exclude: Iterable[RoomAddress] = ()) -> List[RoomAddress]:
        skip = set(exclude)
        return [record.address for record in self.records() if record.address not in skip]

    def clear(self) -> None:
        self._by_address.clear()
        self._by_username.clear()

    def _insert(self, record: ParticipantRecord) -> None:
        self._by_address[record.address] = record
        self._by_username[record.username] = record.address

    def _remove(self, record: ParticipantRecord) -> None:
        self._by_address.pop(record.address, None)
        if self._by_username.get(record.username) == record.address:
            self._by_username.pop(record.username, None)

    def __contains__(self, address: object) -> bool:
        return address in self._by_address

    def __len__(self) -> int:
        return len(self._by_address)
