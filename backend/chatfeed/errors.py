from __future__ import annotations


class ChatError(Exception):
    """Base class for chatfeed errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class StoreError(ChatError):
    """A durable store operation failed."""


class StoreUnavailable(StoreError):
    """The store cannot be reached or did not answer a ping."""


class StoreCommandError(StoreError):
    """A single append/read/add/read-set call was rejected or failed."""


class DecodeError(ChatError):
    """A stored entry could not be parsed back into a Message."""
