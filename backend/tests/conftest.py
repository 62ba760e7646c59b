"""Shared fixtures for chatfeed tests."""

from __future__ import annotations

import pytest

from chatfeed.registry import SubscriptionRegistry
from chatfeed.service import ChatService
from chatfeed.storage import FileStore


@pytest.fixture
def store(tmp_path):
    """File-backed store in a per-test directory."""
    return FileStore(tmp_path / "store")


@pytest.fixture
def registry():
    return SubscriptionRegistry()


@pytest.fixture
async def chat(store, registry):
    """ChatService over the file store; pending subscription waiters are released afterwards."""
    service = ChatService(store, registry)
    yield service
    await service.lifecycle.aclose()
