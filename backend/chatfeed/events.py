from __future__ import annotations

import logging
from typing import TypeVar

from .models import Message
from .registry import DeliveryChannel, SubscriptionRegistry


logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """
    Fan-out of new messages and newly joined users to every registered subscriber.
    Best-effort: a subscriber that has not drained its previous event misses this one,
    the publisher never waits on it.
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self.registry = registry

    def publish_message(self, message: Message) -> int:
        return self._deliver(self.registry.snapshot_message_subscribers(), message, kind="message")

    def publish_user_joined(self, user: str) -> int:
        return self._deliver(self.registry.snapshot_user_subscribers(), user, kind="user_joined")

    @staticmethod
    def _deliver(channels: list[DeliveryChannel[T]], event: T, *, kind: str) -> int:
        delivered = 0
        for channel in channels:
            if channel.offer(event):
                delivered += 1
            else:
                # Slow or released subscriber: drop.
                logger.debug("Dropped %s event for %s", kind, channel.identity)
        return delivered
