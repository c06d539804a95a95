from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from ..constants import DEFAULT_PHASE_NAME, PHASES, SCHEMA_VERSION, TASKS, TRANSITIONS
from ..cycle import derive_pointer
from ..errors import StorageFailure
from ..models import Transition
from ..utils import _now_iso, _to_iso
from .schema import COLLECTION_INDEXES, KEY_PATH, empty_collection, empty_document


def _schema_version(raw: dict[str, Any]) -> int | None:
    value = raw.get("schema_version")
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _migrate_v1_to_v2(raw: dict[str, Any]) -> None:
    """Single-step tasks with a ``completions`` log become one-phase cycles.

    Each task gets phase 0 named ``Done``; each completion becomes a ``0 -> 0``
    transition at the same time; task pointers are derived from the new log.
    """
    collections = raw.setdefault("collections", {})
    tasks_raw = collections.setdefault(TASKS, empty_collection(TASKS))
    completions_raw = collections.pop("completions", None) or {}

    phases = empty_collection(PHASES)
    transitions = empty_collection(TRANSITIONS)
    by_task: dict[int, list[Transition]] = {}

    for item in completions_raw.get("records") or []:
        if not isinstance(item, dict) or item.get("task_id") is None:
            continue
        transition = Transition(
            id=transitions["next_id"],
            task_id=int(item["task_id"]),
            from_phase_index=0,
            to_phase_index=0,
            transitioned_at=_to_iso(item.get("completed_at")) or _now_iso(),
        )
        transitions["next_id"] += 1
        transitions["records"].append(transition.to_dict())
        by_task.setdefault(transition.task_id, []).append(transition)

    for task in tasks_raw.get("records") or []:
        if not isinstance(task, dict) or task.get(KEY_PATH) is None:
            continue
        task_id = int(task[KEY_PATH])
        phases["records"].append(
            {"id": phases["next_id"], "task_id": task_id, "index": 0, "name": DEFAULT_PHASE_NAME, "duration_days": None}
        )
        phases["next_id"] += 1
        created_at = _to_iso(task.get("created_at")) or _now_iso()
        task["created_at"] = created_at
        task["updated_at"] = _to_iso(task.get("updated_at")) or created_at
        index, since = derive_pointer(by_task.get(task_id, []), created_at)
        task["current_phase_index"] = index
        task["current_phase_since"] = since

    collections[PHASES] = phases
    collections[TRANSITIONS] = transitions
    logger.info(
        "Migrated {} tasks and {} completions to the phase/transition schema",
        len(tasks_raw.get("records") or []),
        len(transitions["records"]),
    )


MIGRATIONS: dict[int, Callable[[dict[str, Any]], None]] = {
    1: _migrate_v1_to_v2,
}


def _ensure_collections(raw: dict[str, Any]) -> bool:
    """Add missing collections and index declarations; never drops records."""
    changed = False
    collections = raw.get("collections")
    if not isinstance(collections, dict):
        raw["collections"] = collections = {}
        changed = True
    for name, indexes in COLLECTION_INDEXES.items():
        coll = collections.get(name)
        if not isinstance(coll, dict):
            collections[name] = empty_collection(name)
            changed = True
            continue
        if coll.get("key_path") != KEY_PATH:
            coll["key_path"] = KEY_PATH
            changed = True
        if not isinstance(coll.get("records"), list):
            coll["records"] = []
            changed = True
        declared = coll.get("indexes")
        if not isinstance(declared, dict):
            coll["indexes"] = declared = {}
            changed = True
        for idx, fields in indexes.items():
            if idx not in declared:
                declared[idx] = list(fields)
                changed = True
        ids = [int(r[KEY_PATH]) for r in coll["records"] if isinstance(r, dict) and r.get(KEY_PATH) is not None]
        floor = max(ids, default=0) + 1
        try:
            next_id = int(coll.get("next_id") or 0)
        except (TypeError, ValueError):
            next_id = 0
        if next_id < floor:
            coll["next_id"] = floor
            changed = True
    return changed


def upgrade_document(raw: Any) -> tuple[dict[str, Any], bool]:
    """Bring a loaded store document up to ``SCHEMA_VERSION``.

    Returns ``(document, changed)``.  A missing or empty document becomes a
    fresh one; older versions run each migration step in order; a newer
    version is refused rather than rewritten.
    """
    if raw is None or raw == {}:
        return empty_document(), True
    if not isinstance(raw, dict):
        raise StorageFailure(f"Store document must be a mapping, got {type(raw).__name__}")

    version = _schema_version(raw)
    if version is None:
        raise StorageFailure("Store document has no schema_version")
    if version > SCHEMA_VERSION:
        raise StorageFailure(
            f"Store schema version {version} is newer than supported version {SCHEMA_VERSION}"
        )

    changed = False
    while version < SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise StorageFailure(f"No migration from store schema version {version}")
        logger.info("Migrating store schema {} -> {}", version, version + 1)
        step(raw)
        version += 1
        raw["schema_version"] = version
        changed = True

    if _ensure_collections(raw):
        changed = True
    return raw, changed
