"""Durable store adapter tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from chatfeed.config import Settings
from chatfeed.errors import StoreCommandError, StoreUnavailable
from chatfeed.storage import FileStore, RedisStore, create_store, wait_until_ready


class TestFileStore:
    """JSONL log + line set on disk."""

    async def test_ping_creates_data_dir(self, tmp_path):
        store = FileStore(tmp_path / "nested" / "data")

        assert await store.ping() is True
        assert (tmp_path / "nested" / "data").is_dir()

    async def test_log_reads_newest_first(self, store):
        await store.ping()
        for entry in ("a", "b", "c"):
            await store.append_to_log("messages", entry)

        assert await store.read_log("messages") == [b"c", b"b", b"a"]

    async def test_missing_log_is_empty(self, store):
        assert await store.read_log("messages") == []
        assert await store.read_set("users") == set()

    async def test_add_to_set_reports_new_members(self, store):
        await store.ping()

        assert await store.add_to_set("users", "alice") is True
        assert await store.add_to_set("users", "alice") is False
        assert await store.add_to_set("users", "bob") is True
        assert await store.read_set("users") == {"alice", "bob"}

    async def test_multiline_entry_rejected(self, store):
        await store.ping()

        with pytest.raises(StoreCommandError):
            await store.append_to_log("messages", "line one\nline two")

    async def test_unwritable_root(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        store = FileStore(blocker)

        with pytest.raises(StoreUnavailable):
            await store.ping()
        with pytest.raises(StoreCommandError):
            await store.append_to_log("messages", "{}")

    async def test_writes_before_ping_create_the_data_dir(self, tmp_path):
        """The first append or add works on a fresh directory without a prior ping()."""
        store = FileStore(tmp_path / "fresh")

        await store.append_to_log("messages", "{}")
        assert await store.add_to_set("users", "alice") is True

        assert await store.read_log("messages") == [b"{}"]
        assert await store.read_set("users") == {"alice"}

    async def test_unicode_line_separators_stay_inside_entry(self, store):
        """U+2028, U+2029 and U+0085 are part of the entry, not line breaks."""
        entry = '{"text": "hello\u2028world\u2029and\u0085more"}'

        await store.append_to_log("messages", entry)

        assert await store.read_log("messages") == [entry.encode("utf-8")]

    async def test_set_member_with_line_separator_is_idempotent(self, store):
        assert await store.add_to_set("users", "a\u2028b") is True
        assert await store.add_to_set("users", "a\u2028b") is False

        assert await store.read_set("users") == {"a\u2028b"}

    async def test_invalid_utf8_entry_is_returned_raw(self, store):
        """Undecodable bytes in the log do not break reading the rest of it."""
        await store.append_to_log("messages", '{"id": "1"}')
        with (store.root / "messages.jsonl").open("ab") as f:
            f.write(b'{"id": "\xff\xfe"}\n')
        await store.append_to_log("messages", '{"id": "2"}')

        assert await store.read_log("messages") == [b'{"id": "2"}', b'{"id": "\xff\xfe"}', b'{"id": "1"}']


class TestRedisStore:
    """Redis list/set commands and error translation."""

    @pytest.fixture
    def client(self):
        return AsyncMock()

    @pytest.fixture
    def redis_store(self, client):
        return RedisStore("redis://localhost:6379/0", client=client)

    async def test_append_uses_lpush(self, redis_store, client):
        await redis_store.append_to_log("messages", '{"id": "1"}')

        client.lpush.assert_awaited_once_with("messages", '{"id": "1"}')

    async def test_read_log_reads_whole_list(self, redis_store, client):
        client.lrange.return_value = [b"b", b"a"]

        assert await redis_store.read_log("messages") == [b"b", b"a"]
        client.lrange.assert_awaited_once_with("messages", 0, -1)

    async def test_add_to_set(self, redis_store, client):
        client.sadd.return_value = 1
        assert await redis_store.add_to_set("users", "alice") is True

        client.sadd.return_value = 0
        assert await redis_store.add_to_set("users", "alice") is False

    async def test_read_set(self, redis_store, client):
        client.smembers.return_value = {b"alice", b"bob"}

        assert await redis_store.read_set("users") == {"alice", "bob"}

    def test_client_keeps_replies_as_bytes(self):
        """Log entries are decoded per entry by the reader, not by the connection."""
        store = RedisStore("redis://localhost:6379/0")

        assert store._client.connection_pool.connection_kwargs.get("decode_responses", False) is False

    async def test_ping(self, redis_store, client):
        client.ping.return_value = True

        assert await redis_store.ping() is True

    async def test_connection_error_is_unavailable(self, redis_store, client):
        client.ping.side_effect = RedisConnectionError("connection refused")
        client.lpush.side_effect = RedisTimeoutError("timed out")

        with pytest.raises(StoreUnavailable):
            await redis_store.ping()
        with pytest.raises(StoreUnavailable):
            await redis_store.append_to_log("messages", "{}")

    async def test_command_error(self, redis_store, client):
        client.sadd.side_effect = ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

        with pytest.raises(StoreCommandError) as excinfo:
            await redis_store.add_to_set("users", "alice")

        assert "SADD" in excinfo.value.message

    async def test_aclose(self, redis_store, client):
        await redis_store.aclose()

        client.aclose.assert_awaited_once()


class TestCreateStore:
    def test_file_backend(self, tmp_path):
        store = create_store(Settings(store_backend="file", data_dir=tmp_path))

        assert isinstance(store, FileStore)
        assert store.root == tmp_path

    def test_redis_backend(self):
        store = create_store(Settings(store_backend="redis", redis_url="redis://cache:6379/0"))

        assert isinstance(store, RedisStore)
        assert store.url == "redis://cache:6379/0"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(Settings(store_backend="sqlite"))  # type: ignore[arg-type]


class TestWaitUntilReady:
    """Startup readiness retry."""

    async def test_retries_until_store_answers(self):
        store = AsyncMock()
        store.ping.side_effect = [StoreUnavailable("refused"), StoreUnavailable("refused"), True]

        attempts = await wait_until_ready(store, interval=0)

        assert attempts == 3
        assert store.ping.await_count == 3

    async def test_bounded_attempts_raise(self):
        store = AsyncMock()
        store.ping.side_effect = StoreUnavailable("refused")

        with pytest.raises(StoreUnavailable):
            await wait_until_ready(store, interval=0, max_attempts=3)

        assert store.ping.await_count == 3

    async def test_falsy_reply_counts_as_unavailable(self):
        store = AsyncMock()
        store.ping.return_value = False

        with pytest.raises(StoreUnavailable):
            await wait_until_ready(store, interval=0, max_attempts=1)
