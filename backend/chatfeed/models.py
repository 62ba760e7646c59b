from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from ulid import ULID

from .errors import DecodeError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return str(ULID())


SubscriptionKind = Literal["message", "user_joined"]


class Message(BaseModel):
    """
    A posted chat message. Immutable once created.
    Stored in the durable log as a JSON record: {id, createdAt, text, user}.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    created_at: datetime = Field(alias="createdAt")
    text: str
    user: str

    def to_record(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_record(cls, raw: str | bytes) -> Message:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(f"Message record is not valid UTF-8: {exc.reason} at byte {exc.start}") from exc
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise DecodeError(f"Malformed message record: {exc.error_count()} error(s)") from exc


class PostMessageRequest(BaseModel):
    user: str = Field(min_length=1)
    text: str


class UserJoinedEvent(BaseModel):
    user: str
