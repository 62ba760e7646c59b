from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .models import SubscriptionKind
from .registry import ChannelReader, SubscriptionRegistry


logger = logging.getLogger(__name__)


class SubscriptionLifecycle:
    """
    Ties a subscription to the lifetime of the connection that opened it.
    Each bound subscription gets one waiter task; when the connection's cancellation
    event fires (or the waiter is cancelled at shutdown) it unregisters exactly once.
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self.registry = registry
        self._waiters: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def _unregister_for(self, kind: SubscriptionKind) -> Callable[[str, Any], bool]:
        if kind == "message":
            return self.registry.unregister_message_subscriber
        if kind == "user_joined":
            return self.registry.unregister_user_subscriber
        raise ValueError(f"Unknown subscription kind {kind!r}")

    def bind(
        self,
        identity: str,
        cancelled: asyncio.Event,
        kind: SubscriptionKind,
        reader: ChannelReader[Any],
    ) -> asyncio.Task[None]:
        unregister = self._unregister_for(kind)
        task = asyncio.create_task(
            self._release_when_cancelled(identity, cancelled, kind, reader, unregister),
            name=f"release-{kind}-{identity}",
        )
        self._waiters.add(task)
        task.add_done_callback(self._waiters.discard)
        return task

    @staticmethod
    async def _release_when_cancelled(
        identity: str,
        cancelled: asyncio.Event,
        kind: SubscriptionKind,
        reader: ChannelReader[Any],
        unregister: Callable[[str, Any], bool],
    ) -> None:
        try:
            await cancelled.wait()
        finally:
            removed = unregister(identity, reader)
            logger.info("Released %s subscription for %s (removed=%s)", kind, identity, removed)

    async def aclose(self) -> None:
        waiters = list(self._waiters)
        for task in waiters:
            task.cancel()
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)
