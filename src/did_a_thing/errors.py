"""Error taxonomy shared by the store, the engine and the CLI."""

from __future__ import annotations

from typing import Any, Optional


class DidAThingError(Exception):
    """Base class for every error raised by this package."""


class StorageFailure(DidAThingError):
    """The persistence layer rejected a request (I/O, parse, lock, closed handle)."""


class NotFound(DidAThingError):
    def __init__(self, collection: str, record_id: Any) -> None:
        super().__init__(f"{collection} record {record_id!r} not found")
        self.collection = collection
        self.record_id = record_id


class ValidationFailure(DidAThingError):
    """Input rejected before any write happened.

    ``errors`` holds one message per problem so a caller can show them all.
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]
