"""Track recurring and multi-stage things and when you last did them."""

from __future__ import annotations

from .engine import ThingEngine
from .errors import DidAThingError, NotFound, StorageFailure, ValidationFailure

__version__ = "0.2.0"

__all__ = [
    "DidAThingError",
    "NotFound",
    "StorageFailure",
    "ThingEngine",
    "ValidationFailure",
]
