"""Transport capability interface and an in-process loopback network."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Dict, List, Protocol, Set, Tuple

from .address import RoomAddress, generate_address

logger = logging.getLogger(__name__)

Packet = Tuple[RoomAddress, bytes]


class TransportError(Exception):
    """Raised when the anonymous transport cannot send or receive."""


class Transport(Protocol):
    def self_address(self) -> RoomAddress: ...

    async def send(self, address: RoomAddress, data: bytes) -> None: ...

    async def receive(self) -> Packet: ...

    async def close(self) -> None: ...


class LoopbackNetwork:
    """In-process stand-in for the mixnet with adversarial delivery.

    Each packet is independently delayed by up to ``max_delay_s``, dropped
    with probability ``loss_rate`` and delivered a second time with
    probability ``duplicate_rate``. Packets to unknown addresses vanish, as
    they would on the real transport.
    """

    def __init__(
        self,
        *,
        max_delay_s: float = 0.0,
        loss_rate: float = 0.0,
        duplicate_rate: float = 0.0,
        seed: int | None = None,
    ) -> None:
        for name, rate in (("loss_rate", loss_rate), ("duplicate_rate", duplicate_rate)):
            if not 0.0 <= rate <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if max_delay_s < 0:
            raise ValueError("max_delay_s must be non-negative")
        self.max_delay_s = max_delay_s
        self.loss_rate = loss_rate
        self.duplicate_rate = duplicate_rate
        self._rng = random.Random(seed)
        self._endpoints: Dict[RoomAddress, "LoopbackTransport"] = {}
        self._muted: Set[RoomAddress] = set()
        self.sent: List[Tuple[RoomAddress, RoomAddress, bytes]] = []

    def attach(self, address: RoomAddress | None = None) -> "LoopbackTransport":
        address = address or generate_address(self._rng)
        if address in self._endpoints:
            raise TransportError(f"address already attached: {address}")
        transport = LoopbackTransport(self, address)
        self._endpoints[address] = transport
        return transport

    def detach(self, address: RoomAddress) -> None:
        self._endpoints.pop(address, None)

    def mute(self, address: RoomAddress) -> None:
        """Silently drop everything ``address`` sends from now on."""

        self._muted.add(address)

    def unmute(self, address: RoomAddress) -> None:
        self._muted.discard(address)

    def deliver(self, sender: RoomAddress, address: RoomAddress, data: bytes) -> None:
        self.sent.append((sender, address, data))
        if sender in self._muted:
            return
        copies = 1
        if self.duplicate_rate and self._rng.random() < self.duplicate_rate:
            copies = 2
        for _ in range(copies):
            if self.loss_rate and self._rng.random() < self.loss_rate:
                logger.debug("loopback dropped packet %s -> %s", sender, address)
                continue
            delay = self._rng.uniform(0.0, self.max_delay_s) if self.max_delay_s else 0.0
            if delay:
                asyncio.get_running_loop().call_later(delay, self._arrive, sender, address, data)
            else:
                self._arrive(sender, address, data)

    def _arrive(self, sender: RoomAddress, address: RoomAddress, data: bytes) -> None:
        endpoint = self._endpoints.get(address)
        if endpoint is None or endpoint.closed:
            return
        endpoint._inbox.put_nowait((sender, data))


class LoopbackTransport:
    def __init__(self, network: LoopbackNetwork, address: RoomAddress) -> None:
        self._network = network
        self._address = address
        self._inbox: asyncio.Queue[Packet | None] = asyncio.Queue()
        self.closed = False

    def self_address(self) -> RoomAddress:
        return self._address

    async def send(self, address: RoomAddress, data: bytes) -> None:
        if self.closed:
            raise TransportError("transport is closed")
        self._network.deliver(self._address, address, data)

    async def receive(self) -> Packet:
        if self.closed:
            raise TransportError("transport is closed")
        packet = await self._inbox.get()
        if packet is None:
            raise TransportError("transport is closed")
        return packet

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._network.detach(self._address)
        self._inbox.put_nowait(None)
