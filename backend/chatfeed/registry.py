from __future__ import annotations

import asyncio
import logging
import threading
from typing import Generic, TypeVar

from .models import Message


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised by ChannelReader.get() once the channel is released and drained."""


class DeliveryChannel(Generic[T]):
    """
    Bounded per-subscriber conduit. Only the registry and the event bus hold this
    writable side; subscribers get `reader`.
    """

    def __init__(self, identity: str, capacity: int = 1) -> None:
        self.identity = identity
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._closed = asyncio.Event()
        self.reader: ChannelReader[T] = ChannelReader(self)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, item: T) -> bool:
        """Non-blocking send. False if the channel is closed or still holds an undelivered event."""
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        self._closed.set()

    async def get(self) -> T:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._closed.is_set():
            raise ChannelClosed(self.identity)
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter in done:
            return getter.result()
        raise ChannelClosed(self.identity)


class ChannelReader(Generic[T]):
    """Read-only handle to a delivery channel. Iterates until the subscription is released."""

    def __init__(self, channel: DeliveryChannel[T]) -> None:
        self._channel = channel

    @property
    def identity(self) -> str:
        return self._channel.identity

    @property
    def closed(self) -> bool:
        return self._channel.closed

    def pending(self) -> int:
        return self._channel._queue.qsize()

    async def get(self) -> T:
        return await self._channel.get()

    def __aiter__(self) -> ChannelReader[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self._channel.get()
        except ChannelClosed:
            raise StopAsyncIteration from None


class SubscriptionRegistry:
    """
    identity -> delivery channel, one mapping for message events and one for user-joined events.
    A single lock guards both; it is held only to copy or mutate a mapping.
    A second subscription from the same identity replaces the first in the mapping.
    """

    def __init__(self, capacity: int = 1) -> None:
        self.capacity = capacity
        self._message_channels: dict[str, DeliveryChannel[Message]] = {}
        self._user_channels: dict[str, DeliveryChannel[str]] = {}
        self._lock = threading.Lock()

    def _register(self, mapping: dict[str, DeliveryChannel[T]], identity: str) -> ChannelReader[T]:
        channel: DeliveryChannel[T] = DeliveryChannel(identity, self.capacity)
        with self._lock:
            replaced = mapping.get(identity)
            mapping[identity] = channel
        if replaced is not None:
            logger.info("Subscription for %s replaced an existing one", identity)
        return channel.reader

    def _unregister(
        self,
        mapping: dict[str, DeliveryChannel[T]],
        identity: str,
        reader: ChannelReader[T] | None,
    ) -> bool:
        with self._lock:
            current = mapping.get(identity)
            if current is None:
                removed = None
            elif reader is None or current.reader is reader:
                removed = mapping.pop(identity)
            else:
                removed = None
        if removed is not None:
            removed.close()
        if reader is not None:
            # Releasing a subscription that was already replaced still closes its own channel.
            reader._channel.close()
        return removed is not None

    def _snapshot(self, mapping: dict[str, DeliveryChannel[T]]) -> list[DeliveryChannel[T]]:
        with self._lock:
            return list(mapping.values())

    def register_message_subscriber(self, identity: str) -> ChannelReader[Message]:
        return self._register(self._message_channels, identity)

    def register_user_subscriber(self, identity: str) -> ChannelReader[str]:
        return self._register(self._user_channels, identity)

    def unregister_message_subscriber(self, identity: str, reader: ChannelReader[Message] | None = None) -> bool:
        """
        Remove `identity` from the message mapping; no-op if absent.
        With `reader`, only that subscription's entry is removed.
        """
        return self._unregister(self._message_channels, identity, reader)

    def unregister_user_subscriber(self, identity: str, reader: ChannelReader[str] | None = None) -> bool:
        return self._unregister(self._user_channels, identity, reader)

    def snapshot_message_subscribers(self) -> list[DeliveryChannel[Message]]:
        return self._snapshot(self._message_channels)

    def snapshot_user_subscribers(self) -> list[DeliveryChannel[str]]:
        return self._snapshot(self._user_channels)

    def has_message_subscriber(self, identity: str) -> bool:
        with self._lock:
            return identity in self._message_channels

    def has_user_subscriber(self, identity: str) -> bool:
        with self._lock:
            return identity in self._user_channels

    def subscriber_counts(self) -> dict[str, int]:
        with self._lock:
            return {"message": len(self._message_channels), "user_joined": len(self._user_channels)}
