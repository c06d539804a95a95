"""Thing engine: the call interface used by the command line (or any UI).

Wraps :class:`EntityStore` with the application rules: input validation,
multi-row creation and cascading deletes inside one atomic unit, the cycle
state machine, pointer recomputation after history edits, and backup
export/import.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from loguru import logger

from .constants import (
    ALL_COLLECTIONS,
    DEFAULT_PHASE_NAME,
    DEFAULT_SORT,
    MIN_MULTI_PHASES,
    PHASES,
    SORT_ALPHA,
    TASKS,
    TRANSITIONS,
    VALID_SORTS,
)
from .cycle import (
    advance_in,
    latest_transition,
    phase_count_in,
    recompute_in,
    sort_newest_first,
    transitions_in,
)
from .errors import NotFound, ValidationFailure
from .export import build_export, parse_export
from .models import Phase, Task, TaskOverview, Transition
from .storage import EntityStore, StoreTransaction
from .utils import Timestamp, _input_iso, _now_iso, _parse_iso

PhaseSpec = Union[str, tuple[str, Optional[float]]]

_NEVER = datetime.min.replace(tzinfo=timezone.utc)

_UPDATABLE_TASK_FIELDS = {"title", "current_phase_index", "current_phase_since"}


def _clean_title(title: Any) -> str:
    cleaned = str(title or "").strip()
    if not cleaned:
        raise ValidationFailure("A thing needs a name")
    return cleaned


def _normalize_title(title: str) -> str:
    return title.strip().casefold()


def _check_duration(duration_days: Any) -> Optional[float]:
    if duration_days is None:
        return None
    try:
        value = float(duration_days)
    except (TypeError, ValueError):
        raise ValidationFailure(f"duration_days must be a number, got {duration_days!r}") from None
    if value < 0:
        raise ValidationFailure("duration_days cannot be negative")
    return value


def _phase_specs(phases: Optional[Iterable[PhaseSpec]]) -> list[tuple[str, Optional[float]]]:
    if phases is None:
        return [(DEFAULT_PHASE_NAME, None)]
    specs = list(phases)
    if len(specs) < MIN_MULTI_PHASES:
        raise ValidationFailure(f"A multi-phase thing needs at least {MIN_MULTI_PHASES} phases")
    out: list[tuple[str, Optional[float]]] = []
    errors: list[str] = []
    for position, spec in enumerate(specs):
        name, days = (spec, None) if isinstance(spec, str) else spec
        name = str(name or "").strip()
        if not name:
            errors.append(f"phase {position} needs a name")
            continue
        try:
            out.append((name, _check_duration(days)))
        except ValidationFailure as exc:
            errors.append(f"phase {position}: {exc}")
    if errors:
        raise ValidationFailure("Invalid phases", errors)
    return out


def _recent_key(overview: TaskOverview) -> tuple[int, datetime]:
    if overview.last_transition is None:
        return 0, _NEVER
    return 1, _parse_iso(overview.last_transition.transitioned_at) or _NEVER


class ThingEngine:
    """Manage tasks, their phase rings and their transition history.

    Parameters
    ----------
    state_dir:
        Directory holding the store file.  The store handle is opened here and
        held for the lifetime of the engine.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.store = EntityStore(state_dir)
        self.store.open()

    def open(self) -> None:
        self.store.open()

    def close(self) -> None:
        self.store.close()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        phases: Optional[Iterable[PhaseSpec]] = None,
        *,
        at: Optional[Timestamp] = None,
    ) -> Task:
        """Create a task and its phases in one atomic unit.

        *phases* of ``None`` makes a single-step task with one ``Done`` phase;
        an explicit list must name at least two phases, each either a name or
        a ``(name, duration_days)`` pair.
        """
        clean = _clean_title(title)
        specs = _phase_specs(phases)
        created_at = _input_iso(at) if at is not None else _now_iso()
        if created_at is None:
            raise ValidationFailure(f"Invalid timestamp: {at!r}")

        def _create(tx: StoreTransaction) -> Task:
            row = tx[TASKS].add(
                Task(title=clean, created_at=created_at, updated_at=created_at).to_dict()
            )
            for index, (name, days) in enumerate(specs):
                tx[PHASES].add(
                    Phase(task_id=row["id"], index=index, name=name, duration_days=days).to_dict()
                )
            return Task.from_dict(row)

        task = self.store.run_atomic([TASKS, PHASES], _create)
        logger.info("Created task {} with {} phase(s): {}", task.id, len(specs), clean)
        return task

    def get_task(self, task_id: int) -> Optional[Task]:
        row = self.store.get(TASKS, task_id)
        return Task.from_dict(row) if row is not None else None

    def require_task(self, task_id: int) -> Task:
        return Task.from_dict(self.store.require(TASKS, task_id))

    def list_tasks(self) -> list[Task]:
        return [Task.from_dict(row) for row in self.store.get_all(TASKS)]

    def list_tasks_enriched(self, sort_by: Optional[str] = None) -> list[TaskOverview]:
        """Every task with its phases and last transition, sorted for display.

        ``recent`` lists never-done tasks first, then the least recently done;
        ``alpha`` sorts by title.
        """
        order = sort_by or DEFAULT_SORT
        if order not in VALID_SORTS:
            raise ValidationFailure(f"sort_by must be one of {sorted(VALID_SORTS)}, got '{order}'")

        def _collect(tx: StoreTransaction) -> list[TaskOverview]:
            out: list[TaskOverview] = []
            for row in tx[TASKS].get_all():
                task = Task.from_dict(row)
                phases = sorted(
                    (Phase.from_dict(p) for p in tx[PHASES].get_all_by_index("task_id", task.id)),
                    key=lambda p: p.index,
                )
                out.append(TaskOverview(task, phases, latest_transition(transitions_in(tx, task.id))))
            return out

        overviews = self.store.run_atomic(ALL_COLLECTIONS, _collect, readonly=True)
        if order == SORT_ALPHA:
            overviews.sort(key=lambda o: o.task.title.casefold())
        else:
            overviews.sort(key=_recent_key)
        return overviews

    def update_task(self, task_id: int, changes: dict[str, Any]) -> Task:
        """Apply partial updates to a task and bump ``updated_at``."""
        unknown = sorted(set(changes) - _UPDATABLE_TASK_FIELDS)
        if unknown:
            raise ValidationFailure(f"Cannot update task fields: {unknown}")
        clean: dict[str, Any] = {}
        if "title" in changes:
            clean["title"] = _clean_title(changes["title"])
        if "current_phase_index" in changes:
            index = changes["current_phase_index"]
            if not isinstance(index, int) or isinstance(index, bool) or index < 0:
                raise ValidationFailure("current_phase_index must be a non-negative integer")
            clean["current_phase_index"] = index
        if "current_phase_since" in changes:
            since = _input_iso(changes["current_phase_since"])
            if since is None:
                raise ValidationFailure(f"Invalid timestamp: {changes['current_phase_since']!r}")
            clean["current_phase_since"] = since

        def _update(tx: StoreTransaction) -> Task:
            task = Task.from_dict(tx[TASKS].require(task_id))
            for key, value in clean.items():
                setattr(task, key, value)
            task.touch()
            tx[TASKS].put(task.to_dict())
            return task

        task = self.store.run_atomic([TASKS], _update)
        logger.debug("Updated task {} fields {}", task_id, sorted(clean))
        return task

    def delete_task(self, task_id: int) -> bool:
        """Delete a task with all of its phases and transitions in one unit.

        Returns False when the task was already gone; that is not an error.
        """

        def _cascade(tx: StoreTransaction) -> tuple[bool, int, int]:
            phase_ids = tx[PHASES].get_all_keys_by_index("task_id", task_id)
            transition_ids = tx[TRANSITIONS].get_all_keys_by_index("task_id", task_id)
            for pid in phase_ids:
                tx[PHASES].delete(pid)
            for tid in transition_ids:
                tx[TRANSITIONS].delete(tid)
            return tx[TASKS].delete(task_id), len(phase_ids), len(transition_ids)

        existed, n_phases, n_transitions = self.store.run_atomic(ALL_COLLECTIONS, _cascade)
        if existed:
            logger.info(
                "Deleted task {} with {} phase(s) and {} transition(s)", task_id, n_phases, n_transitions
            )
        return existed

    def task_title_exists(self, title: str, exclude_id: Optional[int] = None) -> bool:
        """Case- and whitespace-insensitive duplicate check (advisory only)."""
        wanted = _normalize_title(title)
        return any(
            _normalize_title(str(row.get("title") or "")) == wanted and row.get("id") != exclude_id
            for row in self.store.get_all(TASKS)
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def create_phase(
        self,
        task_id: int,
        index: int,
        name: str,
        duration_days: Optional[float] = None,
    ) -> Phase:
        """Add one phase to a task's ring.

        The store accepts duplicate ``(task_id, index)`` pairs; the engine
        rejects them through the composite index.
        """
        clean = str(name or "").strip()
        if not clean:
            raise ValidationFailure("A phase needs a name")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise ValidationFailure("Phase index must be a non-negative integer")
        days = _check_duration(duration_days)

        def _create(tx: StoreTransaction) -> Phase:
            tx[TASKS].require(task_id)
            if tx[PHASES].get_all_keys_by_index("task_id_index", (task_id, index)):
                raise ValidationFailure(f"Task {task_id} already has a phase at index {index}")
            row = tx[PHASES].add(
                Phase(task_id=task_id, index=index, name=clean, duration_days=days).to_dict()
            )
            return Phase.from_dict(row)

        return self.store.run_atomic([TASKS, PHASES], _create)

    def get_phases_for_task(self, task_id: int) -> list[Phase]:
        rows = self.store.get_all_by_index(PHASES, "task_id", task_id)
        return sorted((Phase.from_dict(r) for r in rows), key=lambda p: p.index)

    # ------------------------------------------------------------------
    # Transitions and the cycle
    # ------------------------------------------------------------------

    def advance(self, task_id: int, at: Optional[Timestamp] = None) -> Task:
        """Move a task to its next phase, logging the move in the same unit."""
        task, transition = self.store.run_atomic(
            ALL_COLLECTIONS, lambda tx: advance_in(tx, task_id, at)
        )
        logger.info(
            "Task {} advanced {} -> {} at {}",
            task_id,
            transition.from_phase_index,
            transition.to_phase_index,
            transition.transitioned_at,
        )
        return task

    def create_transition(
        self,
        task_id: int,
        transitioned_at: Optional[Timestamp],
        from_phase_index: Optional[int] = None,
        to_phase_index: Optional[int] = None,
    ) -> Transition:
        """Insert a history entry directly, e.g. a backdated completion.

        Does not touch the task pointer: follow with
        :meth:`recompute_current_phase` (or use :meth:`log_transition`).
        """
        if transitioned_at is None or transitioned_at == "":
            raise ValidationFailure("A date and time is required")
        when = _input_iso(transitioned_at)
        if when is None:
            raise ValidationFailure(f"Invalid timestamp: {transitioned_at!r}")

        def _insert(tx: StoreTransaction) -> Transition:
            tx[TASKS].require(task_id)
            count = phase_count_in(tx, task_id)
            if count < 1:
                raise ValidationFailure(f"Task {task_id} has no phases")
            if to_phase_index is None and from_phase_index is None:
                src, dst = 0, 1 % count
            elif to_phase_index is None:
                src, dst = from_phase_index, (from_phase_index + 1) % count
            elif from_phase_index is None:
                src, dst = (to_phase_index - 1) % count, to_phase_index
            else:
                src, dst = from_phase_index, to_phase_index
            for label, value in (("from_phase_index", src), ("to_phase_index", dst)):
                if not 0 <= value < count:
                    raise ValidationFailure(f"{label} {value} is outside phases 0..{count - 1}")
            row = tx[TRANSITIONS].add(
                Transition(task_id=task_id, from_phase_index=src, to_phase_index=dst, transitioned_at=when).to_dict()
            )
            return Transition.from_dict(row)

        transition = self.store.run_atomic(ALL_COLLECTIONS, _insert)
        logger.debug("Inserted transition {} for task {} at {}", transition.id, task_id, when)
        return transition

    def get_transitions_for_task(self, task_id: int) -> list[Transition]:
        """History of a task, newest first."""
        rows = self.store.get_all_by_index(TRANSITIONS, "task_id", task_id)
        return sort_newest_first(Transition.from_dict(r) for r in rows)

    def get_last_transition(self, task_id: int) -> Optional[Transition]:
        history = self.get_transitions_for_task(task_id)
        return history[0] if history else None

    def delete_transition(self, transition_id: int) -> bool:
        """Remove one history entry; the pointer is left for recomputation."""
        return self.store.delete(TRANSITIONS, transition_id)

    def recompute_current_phase(self, task_id: int) -> Task:
        return self.store.run_atomic([TASKS, TRANSITIONS], lambda tx: recompute_in(tx, task_id))

    def recompute_all(self) -> list[Task]:
        def _all(tx: StoreTransaction) -> list[Task]:
            return [recompute_in(tx, row["id"]) for row in tx[TASKS].get_all()]

        return self.store.run_atomic([TASKS, TRANSITIONS], _all)

    def log_transition(
        self,
        task_id: int,
        transitioned_at: Optional[Timestamp],
        from_phase_index: Optional[int] = None,
        to_phase_index: Optional[int] = None,
    ) -> tuple[Transition, Task]:
        """Insert a history entry, then restore the task pointer."""
        transition = self.create_transition(task_id, transitioned_at, from_phase_index, to_phase_index)
        return transition, self.recompute_current_phase(task_id)

    def undo_transition(self, transition_id: int) -> Optional[Task]:
        """Delete a history entry, then restore its task's pointer.

        Returns the recomputed task, or None if the entry was already gone.
        """
        row = self.store.get(TRANSITIONS, transition_id)
        if row is None:
            return None
        self.delete_transition(transition_id)
        task_id = int(row["task_id"])
        try:
            return self.recompute_current_phase(task_id)
        except NotFound:
            return None

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def get_all_data(self, sort_by: Optional[str] = None) -> dict[str, Any]:
        """Export every collection with an export timestamp and schema version."""

        def _dump(tx: StoreTransaction) -> tuple[list, list, list]:
            return tx[TASKS].get_all(), tx[PHASES].get_all(), tx[TRANSITIONS].get_all()

        tasks, phases, transitions = self.store.run_atomic(ALL_COLLECTIONS, _dump, readonly=True)
        return build_export(tasks, phases, transitions, sort_by=sort_by or DEFAULT_SORT)

    def import_data(self, document: Any) -> dict[str, Any]:
        """Replace all data with a validated export document in one unit.

        Ids and relationships are kept; every task pointer is recomputed from
        the imported history.
        """
        doc = parse_export(document)

        def _replace(tx: StoreTransaction) -> dict[str, Any]:
            for name in ALL_COLLECTIONS:
                tx[name].clear()
            for record in doc.tasks:
                task = Task.from_dict(record.model_dump())
                tx[TASKS].add(task.to_dict())
            for record in doc.phases:
                tx[PHASES].add(record.model_dump())
            for record in doc.transitions:
                tx[TRANSITIONS].add(record.model_dump())
            for record in doc.tasks:
                recompute_in(tx, record.id)
            return {name: tx[name].count() for name in ALL_COLLECTIONS}

        summary = self.store.run_atomic(ALL_COLLECTIONS, _replace)
        summary["sort_by"] = doc.sort_by
        logger.info("Imported {tasks} tasks, {phases} phases, {transitions} transitions", **summary)
        return summary

    def wipe_all_data(self) -> None:
        """Irreversibly delete the store.  The engine is closed afterwards."""
        self.store.wipe()
