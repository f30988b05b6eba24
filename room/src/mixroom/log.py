from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict


def _now_ms() -> int:
    return int(time.time() * 1000)


class EventKind(str, Enum):
    CHAT = "chat"
    JOIN = "join"
    LEAVE = "leave"
    CLOSED = "closed"


@dataclass(frozen=True)
class RoomEvent:
    """An ordered, display-ready event released by a room session."""

    kind: EventKind
    username: str | None = None
    text: str = ""
    room_seq: int | None = None
    timestamp_ms: int = 0
    forced: bool = False
    replayed: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class HistoryItem:
    room_seq: int
    username: str
    text: str
    timestamp_ms: int

    def to_dict(self) -> dict:
        return {
            "room_seq": self.room_seq,
            "username": self.username,
            "text": self.text,
            "ts": self.timestamp_ms,
        }


class ChatHistory:
    """Bounded, append-only chat history keyed by room sequence."""

    def __init__(self, limit: int = 100) -> None:
        if limit < 0:
            raise ValueError("history limit must be non-negative")
        self.limit = limit
        self._items: Deque[HistoryItem] = deque(maxlen=limit or None)
        self._by_seq: Dict[int, HistoryItem] = {}

    def append(self, item: HistoryItem) -> bool:
        """Append ``item`` unless its room sequence is already present.

        Returns ``True`` when the item was stored. Items must arrive in
        increasing room sequence order.
        """

        if self.limit == 0 or item.room_seq in self._by_seq:
            return False
        if self._items and item.room_seq < self._items[-1].room_seq:
            raise ValueError("history must be appended in room sequence order")
        if len(self._items) == self.limit:
            evicted = self._items[0]
            self._by_seq.pop(evicted.room_seq, None)
        self._items.append(item)
        self._by_seq[item.room_seq] = item
        return True

    def list_since(self, after_seq: int = 0, limit: int | None = None) -> list[HistoryItem]:
        """Return retained items with ``room_seq`` greater than ``after_seq``."""

        if after_seq < 0:
            raise ValueError("after_seq must be non-negative")
        items = [item for item in self._items if item.room_seq > after_seq]
        if limit is not None:
            items = items[: max(limit, 0)]
        return items

    def __len__(self) -> int:
        return len(self._items)
