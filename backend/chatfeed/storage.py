from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

import aiofiles
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import Settings
from .errors import StoreCommandError, StoreUnavailable


logger = logging.getLogger(__name__)


class DurableStore(Protocol):
    """
    The operations the chat core needs from its persistence engine:
    an append-only log of serialized entries and a set of members.
    """

    async def ping(self) -> bool: ...

    async def append_to_log(self, log_name: str, entry: str) -> None: ...

    async def read_log(self, log_name: str) -> list[bytes]: ...

    async def add_to_set(self, set_name: str, member: str) -> bool: ...

    async def read_set(self, set_name: str) -> set[str]: ...

    async def aclose(self) -> None: ...


@contextmanager
def _redis_command(op: str, key: str) -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise StoreUnavailable(f"{op} {key!r}: {exc}") from exc
    except RedisError as exc:
        raise StoreCommandError(f"{op} {key!r}: {exc}") from exc


class RedisStore:
    """
    Log is a Redis list written with LPUSH, so LRANGE 0 -1 reads it most-recent-first.
    Known users are a Redis set.
    """

    def __init__(self, url: str, *, client: aioredis.Redis | None = None) -> None:
        self.url = url
        # Replies stay bytes; log entries are decoded one by one by the reader.
        self._client = client or aioredis.from_url(
            url,
            decode_responses=False,
            socket_connect_timeout=5.0,
            health_check_interval=30,
        )

    async def ping(self) -> bool:
        with _redis_command("PING", self.url):
            return bool(await self._client.ping())

    async def append_to_log(self, log_name: str, entry: str) -> None:
        with _redis_command("LPUSH", log_name):
            await self._client.lpush(log_name, entry)

    async def read_log(self, log_name: str) -> list[bytes]:
        with _redis_command("LRANGE", log_name):
            return list(await self._client.lrange(log_name, 0, -1))

    async def add_to_set(self, set_name: str, member: str) -> bool:
        with _redis_command("SADD", set_name):
            added = await self._client.sadd(set_name, member)
        return added > 0

    async def read_set(self, set_name: str) -> set[str]:
        with _redis_command("SMEMBERS", set_name):
            members = await self._client.smembers(set_name)
        return {m.decode("utf-8", errors="replace") if isinstance(m, bytes) else m for m in members}

    async def aclose(self) -> None:
        await self._client.aclose()


class FileStore:
    """
    File-based store for local runs without Redis.
    Persisted in a folder containing:
      - <log_name>.jsonl  (one entry per line, appended; read back newest first)
      - <set_name>.set    (one member per line)
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = asyncio.Lock()

    def _log_path(self, log_name: str) -> Path:
        return self.root / f"{log_name}.jsonl"

    def _set_path(self, set_name: str) -> Path:
        return self.root / f"{set_name}.set"

    async def ping(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Data dir {self.root} is not usable: {exc}") from exc
        return True

    async def _append_line(self, path: Path, line: str) -> None:
        if "\n" in line:
            raise StoreCommandError(f"Refusing multi-line entry for {path.name}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "ab") as f:
                await f.write(line.encode("utf-8") + b"\n")
        except OSError as exc:
            raise StoreCommandError(f"append {path.name}: {exc}") from exc

    async def _read_lines(self, path: Path) -> list[bytes]:
        if not path.exists():
            return []
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as exc:
            raise StoreCommandError(f"read {path.name}: {exc}") from exc
        # Only b"\n" separates entries; other line breaks belong to the entry.
        return [line for line in content.split(b"\n") if line]

    async def _read_members(self, path: Path) -> set[str]:
        return {line.decode("utf-8", errors="replace") for line in await self._read_lines(path)}

    async def append_to_log(self, log_name: str, entry: str) -> None:
        async with self._lock:
            await self._append_line(self._log_path(log_name), entry)

    async def read_log(self, log_name: str) -> list[bytes]:
        lines = await self._read_lines(self._log_path(log_name))
        lines.reverse()
        return lines

    async def add_to_set(self, set_name: str, member: str) -> bool:
        path = self._set_path(set_name)
        async with self._lock:
            if member in await self._read_members(path):
                return False
            await self._append_line(path, member)
        return True

    async def read_set(self, set_name: str) -> set[str]:
        return await self._read_members(self._set_path(set_name))

    async def aclose(self) -> None:
        return None


def create_store(settings: Settings) -> DurableStore:
    if settings.store_backend == "redis":
        return RedisStore(settings.redis_url)
    if settings.store_backend == "file":
        return FileStore(settings.data_dir)
    raise ValueError(f"Unknown STORE_BACKEND {settings.store_backend!r} (expected redis|file)")


async def wait_until_ready(
    store: DurableStore,
    *,
    interval: float = 2.0,
    max_attempts: int | None = None,
) -> int:
    """
    Ping the store until it answers, sleeping `interval` seconds between attempts.
    Retries forever unless `max_attempts` is set. Returns the number of attempts used.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if await store.ping():
                logger.info("Store ready after %d attempt(s)", attempt)
                return attempt
            error: StoreUnavailable = StoreUnavailable("Store ping returned a falsy reply")
        except StoreUnavailable as exc:
            error = exc
        if max_attempts is not None and attempt >= max_attempts:
            raise error
        logger.warning("Store not ready (attempt %d): %s; retrying in %.1fs", attempt, error, interval)
        await asyncio.sleep(interval)
