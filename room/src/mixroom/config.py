from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .presence import MIN_TIMEOUT_FACTOR, PresenceConfig

ENV_PREFIX = "MIXROOM_"


@dataclass(frozen=True)
class RoomConfig:
    heartbeat_interval_s: float = 10.0
    timeout_factor: int = MIN_TIMEOUT_FACTOR
    reorder_window: int = 32
    reorder_timeout_s: float = 5.0
    dedup_capacity: int = 4096
    join_timeout_s: float = 60.0
    join_retry_interval_s: float = 10.0
    leave_timeout_s: float = 2.0
    history_limit: int = 100
    max_chat_bytes: int = 4096
    inbox_size: int = 1000

    def __post_init__(self) -> None:
        for name in (
            "heartbeat_interval_s",
            "reorder_timeout_s",
            "join_timeout_s",
            "join_retry_interval_s",
            "leave_timeout_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.timeout_factor < MIN_TIMEOUT_FACTOR:
            raise ValueError(f"timeout_factor must be at least {MIN_TIMEOUT_FACTOR}")
        for name in ("reorder_window", "dedup_capacity", "max_chat_bytes", "inbox_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.history_limit < 0:
            raise ValueError("history_limit must be non-negative")

    @property
    def presence(self) -> PresenceConfig:
        return PresenceConfig(heartbeat_interval_s=self.heartbeat_interval_s, timeout_factor=self.timeout_factor)

    @property
    def reorder_timeout_ms(self) -> int:
        return int(self.reorder_timeout_s * 1000)

    @property
    def join_retry_interval_ms(self) -> int:
        return int(self.join_retry_interval_s * 1000)


def _parse_positive_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_non_negative_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def load_room_config_from_env(environ: Mapping[str, str] | None = None) -> RoomConfig:
    env = os.environ if environ is None else environ
    defaults = RoomConfig()
    return RoomConfig(
        heartbeat_interval_s=_parse_positive_float(
            env, f"{ENV_PREFIX}HEARTBEAT_INTERVAL_S", defaults.heartbeat_interval_s
        ),
        timeout_factor=_parse_non_negative_int(env, f"{ENV_PREFIX}TIMEOUT_FACTOR", defaults.timeout_factor),
        reorder_window=_parse_non_negative_int(env, f"{ENV_PREFIX}REORDER_WINDOW", defaults.reorder_window),
        reorder_timeout_s=_parse_positive_float(env, f"{ENV_PREFIX}REORDER_TIMEOUT_S", defaults.reorder_timeout_s),
        dedup_capacity=_parse_non_negative_int(env, f"{ENV_PREFIX}DEDUP_CAPACITY", defaults.dedup_capacity),
        join_timeout_s=_parse_positive_float(env, f"{ENV_PREFIX}JOIN_TIMEOUT_S", defaults.join_timeout_s),
        join_retry_interval_s=_parse_positive_float(
            env, f"{ENV_PREFIX}JOIN_RETRY_INTERVAL_S", defaults.join_retry_interval_s
        ),
        leave_timeout_s=_parse_positive_float(env, f"{ENV_PREFIX}LEAVE_TIMEOUT_S", defaults.leave_timeout_s),
        history_limit=_parse_non_negative_int(env, f"{ENV_PREFIX}HISTORY_LIMIT", defaults.history_limit),
    )
