from __future__ import annotations

import random
import re
import secrets
from dataclasses import dataclass

SCHEME_PREFIX = "nym://"
MAX_ADDRESS_LENGTH = 512

_BASE58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_PART = f"[{_BASE58}]+"
_ADDRESS_RE = re.compile(rf"^({_PART})\.({_PART})@({_PART})$")


class MalformedAddress(ValueError):
    """Raised when a room address string cannot be parsed."""


@dataclass(frozen=True, order=True)
class RoomAddress:
    """Opaque, hashable handle for an address on the anonymous transport."""

    value: str

    def __str__(self) -> str:
        return self.value


def parse_address(text: str) -> RoomAddress:
    if not isinstance(text, str):
        raise MalformedAddress("address must be a string")
    raw = text.strip()
    if raw.startswith(SCHEME_PREFIX):
        raw = raw[len(SCHEME_PREFIX) :]
    if not raw:
        raise MalformedAddress("address is empty")
    if len(raw) > MAX_ADDRESS_LENGTH:
        raise MalformedAddress("address too long")
    if _ADDRESS_RE.match(raw) is None:
        raise MalformedAddress(f"not a valid address: {raw[:64]!r}")
    return RoomAddress(raw)


def format_address(address: RoomAddress) -> str:
    return f"{SCHEME_PREFIX}{address.value}"


def generate_address(rng: random.Random | None = None, *, part_length: int = 44) -> RoomAddress:
    """Mint a fresh address in the transport's textual form.

    Real addresses come from the mixnet client; this is used by the loopback
    network and the development relay.
    """

    if rng is None:
        choose = secrets.choice
    else:
        choose = rng.choice
    parts = ["".join(choose(_BASE58) for _ in range(part_length)) for _ in range(3)]
    return RoomAddress(f"{parts[0]}.{parts[1]}@{parts[2]}")
