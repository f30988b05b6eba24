"""Anonymous chat rooms over a lossy, unordered mix network."""

from .address import MalformedAddress, RoomAddress, format_address, parse_address
from .config import RoomConfig, load_room_config_from_env
from .envelope import Envelope, EnvelopeType, ProtocolError, decode_envelope, encode_envelope
from .hub import EventHub, Subscription
from .log import EventKind, RoomEvent
from .server import main
from .session import JoinError, Role, RoomSession, SessionError, SessionState
from .transport import LoopbackNetwork, Transport, TransportError

__all__ = [
    "MalformedAddress",
    "RoomAddress",
    "format_address",
    "parse_address",
    "RoomConfig",
    "load_room_config_from_env",
    "Envelope",
    "EnvelopeType",
    "ProtocolError",
    "decode_envelope",
    "encode_envelope",
    "EventHub",
    "Subscription",
    "EventKind",
    "RoomEvent",
    "main",
    "JoinError",
    "Role",
    "RoomSession",
    "SessionError",
    "SessionState",
    "LoopbackNetwork",
    "Transport",
    "TransportError",
]
