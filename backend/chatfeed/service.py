from __future__ import annotations

import asyncio
import logging

from .errors import DecodeError
from .events import EventBus
from .lifecycle import SubscriptionLifecycle
from .models import Message, new_message_id, utcnow
from .registry import ChannelReader, SubscriptionRegistry
from .storage import DurableStore


logger = logging.getLogger(__name__)


class ChatService:
    """
    Operations mounted by the transport layer:
      listMessages, listUsers, postMessage, messagePosted, userJoined.
    Persists through the store and publishes through the event bus; a message is
    published only after its append succeeded.
    """

    def __init__(
        self,
        store: DurableStore,
        registry: SubscriptionRegistry | None = None,
        *,
        messages_key: str = "messages",
        users_key: str = "users",
    ) -> None:
        self.store = store
        self.registry = registry or SubscriptionRegistry()
        self.bus = EventBus(self.registry)
        self.lifecycle = SubscriptionLifecycle(self.registry)
        self.messages_key = messages_key
        self.users_key = users_key

    async def ensure_user(self, user: str) -> bool:
        """Add `user` to the known users. Publishes a join event only when the user is new."""
        created = await self.store.add_to_set(self.users_key, user)
        if created:
            logger.info("New user %s", user)
            self.bus.publish_user_joined(user)
        return created

    async def post_message(self, user: str, text: str) -> Message:
        await self.ensure_user(user)
        message = Message(id=new_message_id(), created_at=utcnow(), text=text, user=user)
        await self.store.append_to_log(self.messages_key, message.to_record())
        self.bus.publish_message(message)
        return message

    async def list_messages(self) -> list[Message]:
        messages: list[Message] = []
        for raw in await self.store.read_log(self.messages_key):
            try:
                messages.append(Message.from_record(raw))
            except DecodeError as exc:
                logger.warning("Skipping stored entry in %s: %s", self.messages_key, exc)
        return messages

    async def list_users(self) -> set[str]:
        return await self.store.read_set(self.users_key)

    async def subscribe_messages(self, user: str, cancelled: asyncio.Event) -> ChannelReader[Message]:
        await self.ensure_user(user)
        reader = self.registry.register_message_subscriber(user)
        self.lifecycle.bind(user, cancelled, "message", reader)
        logger.info("%s subscribed to messages", user)
        return reader

    async def subscribe_user_joined(self, user: str, cancelled: asyncio.Event) -> ChannelReader[str]:
        await self.ensure_user(user)
        reader = self.registry.register_user_subscriber(user)
        self.lifecycle.bind(user, cancelled, "user_joined", reader)
        logger.info("%s subscribed to joins", user)
        return reader

    async def aclose(self) -> None:
        await self.lifecycle.aclose()
        await self.store.aclose()
