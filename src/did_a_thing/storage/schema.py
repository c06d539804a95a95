"""Collection and index declarations for the embedded store.

Each collection is keyed by an auto-increment integer ``id``.  An index maps
a tuple of field values to the ids of the records carrying them; single-field
indexes are queried with the bare value, composite ones with a tuple.
"""

from __future__ import annotations

from typing import Any

from ..constants import PHASES, SCHEMA_VERSION, TASKS, TRANSITIONS

KEY_PATH = "id"

COLLECTION_INDEXES: dict[str, dict[str, list[str]]] = {
    TASKS: {
        "title": ["title"],
        "created_at": ["created_at"],
        "updated_at": ["updated_at"],
    },
    PHASES: {
        "task_id": ["task_id"],
        "task_id_index": ["task_id", "index"],
    },
    TRANSITIONS: {
        "task_id": ["task_id"],
        "transitioned_at": ["transitioned_at"],
        "task_id_transitioned_at": ["task_id", "transitioned_at"],
    },
}


def empty_collection(name: str) -> dict[str, Any]:
    return {
        "key_path": KEY_PATH,
        "next_id": 1,
        "indexes": {idx: list(fields) for idx, fields in COLLECTION_INDEXES[name].items()},
        "records": [],
    }


def empty_document() -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "collections": {name: empty_collection(name) for name in COLLECTION_INDEXES},
    }
