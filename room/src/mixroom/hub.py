from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List

from .log import EventKind, RoomEvent

Callback = Callable[[RoomEvent], None]


@dataclass
class Subscription:
    callback: Callback
    kinds: frozenset[EventKind] | None = None

    def deliver(self, event: RoomEvent) -> None:
        if self.kinds is None or event.kind in self.kinds:
            self.callback(event)


class EventHub:
    """Registers display listeners and hands them released room events."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []

    def subscribe(self, callback: Callback, kinds: frozenset[EventKind] | None = None) -> Subscription:
        subscription = Subscription(callback=callback, kinds=kinds)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    def broadcast(self, event: RoomEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.deliver(event)

    def __len__(self) -> int:
        return len(self._subscriptions)
