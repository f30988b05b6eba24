"""Wire envelope model and its JSON codec."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, List, Tuple

from .address import MalformedAddress, RoomAddress, parse_address
from .log import HistoryItem

WIRE_VERSION = 1
MAX_ENVELOPE_BYTES = 64 * 1024


class ProtocolError(ValueError):
    """Raised when inbound bytes do not form a valid envelope."""


class EnvelopeType(str, Enum):
    JOIN = "join"
    WELCOME = "welcome"
    LEAVE = "leave"
    CHAT = "chat"
    HEARTBEAT = "heartbeat"


DedupKey = Tuple[RoomAddress, int]


@dataclass(frozen=True)
class Envelope:
    type: EnvelopeType
    sender: RoomAddress
    sequence: int
    timestamp_ms: int
    username: str | None = None
    payload: bytes = b""
    room_seq: int | None = None

    @property
    def dedup_key(self) -> DedupKey:
        return (self.sender, self.sequence)

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8")

    def stamped(self, room_seq: int) -> "Envelope":
        return replace(self, room_seq=room_seq)


@dataclass(frozen=True)
class MemberEntry:
    address: RoomAddress
    username: str
    join_sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address.value, "username": self.username, "join_sequence": self.join_sequence}


@dataclass(frozen=True)
class WelcomeError:
    code: str
    message: str


@dataclass(frozen=True)
class WelcomeBody:
    members: List[MemberEntry] = field(default_factory=list)
    history: List[HistoryItem] = field(default_factory=list)
    error: WelcomeError | None = None


def encode_envelope(envelope: Envelope) -> bytes:
    frame: dict[str, Any] = {
        "v": WIRE_VERSION,
        "t": envelope.type.value,
        "from": envelope.sender.value,
        "seq": envelope.sequence,
        "ts": envelope.timestamp_ms,
    }
    if envelope.username is not None:
        frame["user"] = envelope.username
    if envelope.payload:
        frame["body"] = base64.b64encode(envelope.payload).decode("ascii")
    if envelope.room_seq is not None:
        frame["rseq"] = envelope.room_seq
    data = json.dumps(frame, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(data) > MAX_ENVELOPE_BYTES:
        raise ValueError("envelope exceeds maximum size")
    return data


def _non_negative_int(frame: dict, key: str, *, required: bool = True) -> int | None:
    value = frame.get(key)
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProtocolError(f"{key} must be a non-negative integer")
    return value


def decode_envelope(data: bytes) -> Envelope:
    if len(data) > MAX_ENVELOPE_BYTES:
        raise ProtocolError("envelope too large")
    try:
        frame = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise ProtocolError("truncated or malformed envelope") from exc
    if not isinstance(frame, dict):
        raise ProtocolError("envelope must be a JSON object")
    if frame.get("v") != WIRE_VERSION:
        raise ProtocolError("unsupported envelope version")

    try:
        env_type = EnvelopeType(frame.get("t"))
    except ValueError as exc:
        raise ProtocolError(f"unknown envelope type: {frame.get('t')!r}") from exc

    try:
        sender = parse_address(frame.get("from"))
    except MalformedAddress as exc:
        raise ProtocolError(f"bad sender address: {exc}") from exc

    sequence = _non_negative_int(frame, "seq")
    timestamp_ms = _non_negative_int(frame, "ts")
    room_seq = _non_negative_int(frame, "rseq", required=False)

    username = frame.get("user")
    if username is not None and (not isinstance(username, str) or not username):
        raise ProtocolError("user must be a non-empty string")

    body = frame.get("body", "")
    if not isinstance(body, str):
        raise ProtocolError("body must be base64 text")
    try:
        payload = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError("body must be valid base64") from exc

    envelope = Envelope(
        type=env_type,
        sender=sender,
        sequence=sequence,
        timestamp_ms=timestamp_ms,
        username=username,
        payload=payload,
        room_seq=room_seq,
    )
    _check_shape(envelope)
    return envelope


def _check_shape(envelope: Envelope) -> None:
    env_type = envelope.type
    if env_type is EnvelopeType.JOIN and envelope.username is None:
        raise ProtocolError("join requires a username")
    if env_type in {EnvelopeType.HEARTBEAT, EnvelopeType.WELCOME} and envelope.username is not None:
        raise ProtocolError(f"{env_type.value} must not carry a username")
    if env_type in {EnvelopeType.HEARTBEAT, EnvelopeType.LEAVE} and envelope.payload:
        raise ProtocolError(f"{env_type.value} must have an empty payload")
    if env_type is EnvelopeType.CHAT:
        if envelope.room_seq is not None and envelope.username is None:
            raise ProtocolError("relayed chat requires a username")
        if not envelope.payload:
            raise ProtocolError("chat payload is empty")
        try:
            envelope.payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("chat payload must be UTF-8") from exc


def pack_member(entry: MemberEntry) -> bytes:
    return json.dumps(entry.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _member_from_obj(obj: Any) -> MemberEntry:
    if not isinstance(obj, dict):
        raise ProtocolError("member entry must be an object")
    username = obj.get("username")
    join_sequence = obj.get("join_sequence")
    if not isinstance(username, str) or not username:
        raise ProtocolError("member username required")
    if isinstance(join_sequence, bool) or not isinstance(join_sequence, int) or join_sequence < 0:
        raise ProtocolError("member join_sequence must be a non-negative integer")
    try:
        address = parse_address(obj.get("address"))
    except MalformedAddress as exc:
        raise ProtocolError(f"bad member address: {exc}") from exc
    return MemberEntry(address=address, username=username, join_sequence=join_sequence)


def _load_json_payload(payload: bytes) -> Any:
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise ProtocolError("payload is not valid JSON") from exc


def unpack_member(payload: bytes) -> MemberEntry:
    return _member_from_obj(_load_json_payload(payload))


def pack_welcome(
    members: Iterable[MemberEntry],
    history: Iterable[HistoryItem] = (),
    error: WelcomeError | None = None,
) -> bytes:
    body: dict[str, Any] = {
        "members": [entry.to_dict() for entry in members],
        "history": [item.to_dict() for item in history],
    }
    if error is not None:
        body["error"] = {"code": error.code, "message": error.message}
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def unpack_welcome(payload: bytes) -> WelcomeBody:
    obj = _load_json_payload(payload)
    if not isinstance(obj, dict):
        raise ProtocolError("welcome payload must be an object")

    raw_error = obj.get("error")
    error = None
    if raw_error is not None:
        if not isinstance(raw_error, dict) or not isinstance(raw_error.get("code"), str):
            raise ProtocolError("welcome error must carry a code")
        error = WelcomeError(code=raw_error["code"], message=str(raw_error.get("message", "")))

    raw_members = obj.get("members", [])
    raw_history = obj.get("history", [])
    if not isinstance(raw_members, list) or not isinstance(raw_history, list):
        raise ProtocolError("welcome members and history must be lists")
    members = [_member_from_obj(item) for item in raw_members]

    history: list[HistoryItem] = []
    for item in raw_history:
        if not isinstance(item, dict):
            raise ProtocolError("history item must be an object")
        room_seq = item.get("room_seq")
        username = item.get("username")
        text = item.get("text")
        ts = item.get("ts", 0)
        if (
            isinstance(room_seq, bool)
            or not isinstance(room_seq, int)
            or not isinstance(username, str)
            or not isinstance(text, str)
            or isinstance(ts, bool)
            or not isinstance(ts, int)
        ):
            raise ProtocolError("malformed history item")
        history.append(HistoryItem(room_seq=room_seq, username=username, text=text, timestamp_ms=ts))

    return WelcomeBody(members=members, history=history, error=error)
