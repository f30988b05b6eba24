from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List

from .log import _now_ms
from .membership import MembershipTable, ParticipantRecord

logger = logging.getLogger(__name__)

MIN_TIMEOUT_FACTOR = 3


@dataclass
class PresenceConfig:
    heartbeat_interval_s: float = 10.0
    timeout_factor: int = MIN_TIMEOUT_FACTOR

    def __post_init__(self) -> None:
        if self.heartbeat_interval_s <= 0:
            raise ValueError("heartbeat_interval_s must be positive")
        if self.timeout_factor < MIN_TIMEOUT_FACTOR:
            raise ValueError(f"timeout_factor must be at least {MIN_TIMEOUT_FACTOR}")

    @property
    def heartbeat_interval_ms(self) -> int:
        return int(self.heartbeat_interval_s * 1000)

    @property
    def timeout_ms(self) -> int:
        return self.timeout_factor * self.heartbeat_interval_ms


class PresenceMonitor:
    """Heartbeat scheduling and timeout-based eviction for one session.

    The monitor never mutates anything from its own timer: each tick only
    invokes the callback handed to :meth:`start_timer`, and the owning session
    calls :meth:`evict_stale` or :meth:`heartbeat_due` from its loop.
    """

    def __init__(self, config: PresenceConfig | None = None, *, now_func=_now_ms) -> None:
        self.config = config or PresenceConfig()
        self._now = now_func
        self._timer_task: asyncio.Task | None = None
        self._sent_since_tick = False
        self.ticks = 0

    def start_timer(self, on_tick: Callable[[], None]) -> None:
        if self._timer_task is None:
            self._timer_task = asyncio.create_task(self._run_timer(on_tick))

    async def stop_timer(self) -> None:
        if self._timer_task is None:
            return
        self._timer_task.cancel()
        try:
            await self._timer_task
        except asyncio.CancelledError:
            pass
        self._timer_task = None

    async def _run_timer(self, on_tick: Callable[[], None]) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.heartbeat_interval_s)
                self.ticks += 1
                on_tick()
        except asyncio.CancelledError:
            return

    def evict_stale(self, members: MembershipTable, now_ms: int | None = None) -> List[ParticipantRecord]:
        """Remove participants silent for ``timeout_factor`` heartbeat periods."""

        now_ms = self._now() if now_ms is None else now_ms
        evicted = members.evict_stale(now_ms, self.config.timeout_ms)
        for record in evicted:
            logger.info(
                "evicting %s after %d ms of silence",
                record.username,
                now_ms - record.last_seen_ms,
            )
        return evicted

    def note_sent(self) -> None:
        self._sent_since_tick = True

    def heartbeat_due(self) -> bool:
        """Return whether a heartbeat should go out on this tick.

        True when nothing was sent to the room since the previous tick; the
        call starts a new observation period either way.
        """

        due = not self._sent_since_tick
        self._sent_since_tick = False
        return due
