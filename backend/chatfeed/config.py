from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


StoreBackend = Literal["redis", "file"]


def _env_tuple(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if not raw:
        return None
    return int(raw)


def normalize_redis_url(url: str) -> str:
    # REDIS_URL may be a bare "host:port" address.
    if "://" in url:
        return url
    return f"redis://{url}"


@dataclass(frozen=True)
class Settings:
    store_backend: StoreBackend = field(
        default_factory=lambda: os.getenv("STORE_BACKEND", "redis")  # type: ignore[return-value]
    )
    redis_url: str = field(
        default_factory=lambda: normalize_redis_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    )
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("DATA_DIR", str(Path(__file__).resolve().parents[1] / "data")))
    )

    messages_key: str = field(default_factory=lambda: os.getenv("MESSAGES_KEY", "messages"))
    users_key: str = field(default_factory=lambda: os.getenv("USERS_KEY", "users"))

    # Each subscriber holds at most this many undelivered events; the rest are dropped.
    channel_capacity: int = 1

    store_retry_interval: float = field(default_factory=lambda: float(os.getenv("STORE_RETRY_INTERVAL", "2.0")))
    # None retries forever.
    store_retry_attempts: int | None = field(default_factory=lambda: _env_optional_int("STORE_RETRY_ATTEMPTS"))

    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8080")))
    cors_allow_origins: tuple[str, ...] = field(default_factory=lambda: _env_tuple("CORS_ALLOW_ORIGINS", "*"))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())


SETTINGS = Settings()
