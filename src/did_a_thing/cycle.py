"""Cycle state machine and current-phase recomputation.

A task sits in exactly one phase of a ring of ``n >= 1`` phases.  Advancing
moves it to ``(i + 1) mod n`` and appends a transition; with ``n == 1`` every
advance is a ``0 -> 0`` self-loop, i.e. a plain completion log.

The task row caches ``(current_phase_index, current_phase_since)``.  The
transition log is the source of truth: :func:`derive_pointer` rebuilds the
pointer from the log alone and :func:`recompute_in` writes it back.  Functions
suffixed ``_in`` operate inside an open store transaction and never open one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional

from loguru import logger

from .constants import PHASES, TASKS, TRANSITIONS
from .errors import ValidationFailure
from .models import Task, Transition
from .utils import Timestamp, _input_iso, _now_iso, _parse_iso

if TYPE_CHECKING:
    from .storage.store import StoreTransaction

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def next_phase_index(current: int, phase_count: int) -> int:
    if phase_count < 1:
        raise ValidationFailure("Task has no phases to advance through")
    return (current + 1) % phase_count


def _order_key(transition: Transition) -> tuple[datetime, int]:
    # Equal timestamps fall back to id order: the later insert wins.
    return (_parse_iso(transition.transitioned_at) or _EPOCH, transition.id or 0)


def latest_transition(transitions: Iterable[Transition]) -> Optional[Transition]:
    return max(transitions, key=_order_key, default=None)


def sort_newest_first(transitions: Iterable[Transition]) -> list[Transition]:
    return sorted(transitions, key=_order_key, reverse=True)


def derive_pointer(transitions: Iterable[Transition], created_at: str) -> tuple[int, str]:
    """Return ``(current_phase_index, current_phase_since)`` implied by *transitions*."""
    latest = latest_transition(transitions)
    if latest is None:
        return 0, created_at
    return latest.to_phase_index, latest.transitioned_at


def phase_count_in(tx: StoreTransaction, task_id: int) -> int:
    return len(tx[PHASES].get_all_keys_by_index("task_id", task_id))


def transitions_in(tx: StoreTransaction, task_id: int) -> list[Transition]:
    return [Transition.from_dict(r) for r in tx[TRANSITIONS].get_all_by_index("task_id", task_id)]


def advance_in(tx: StoreTransaction, task_id: int, at: Optional[Timestamp] = None) -> tuple[Task, Transition]:
    """Move *task_id* one step around its ring and log the move.

    Needs ``tasks``, ``phases`` and ``transitions`` in scope.  *at* may not
    precede the latest logged transition; backdated entries go through the
    manual history path followed by recomputation.
    """
    task = Task.from_dict(tx[TASKS].require(task_id))
    phase_count = phase_count_in(tx, task_id)
    when = _input_iso(at) if at is not None else _now_iso()
    if when is None:
        raise ValidationFailure(f"Invalid timestamp: {at!r}")

    history = transitions_in(tx, task_id)
    latest = latest_transition(history)
    if latest is not None and _parse_iso(when) < _parse_iso(latest.transitioned_at):
        raise ValidationFailure(
            f"Cannot advance task {task_id} at {when}: transition {latest.id} is logged later, "
            f"at {latest.transitioned_at}; undo it or log this entry with a backdated time"
        )

    to_index = next_phase_index(task.current_phase_index, phase_count)
    from_index = task.current_phase_index % phase_count
    row = tx[TRANSITIONS].add(
        Transition(
            task_id=task_id,
            from_phase_index=from_index,
            to_phase_index=to_index,
            transitioned_at=when,
        ).to_dict()
    )
    transition = Transition.from_dict(row)

    task.current_phase_index = to_index
    task.current_phase_since = when
    task.touch()
    tx[TASKS].put(task.to_dict())
    return task, transition


def recompute_in(tx: StoreTransaction, task_id: int) -> Task:
    """Overwrite the cached pointer of *task_id* from its transition log.

    Needs ``tasks`` and ``transitions`` in scope.  Idempotent.  The pointer is
    derived from the log and ``created_at`` only; the cached pair is compared
    afterwards to decide whether ``updated_at`` moves.
    """
    task = Task.from_dict(tx[TASKS].require(task_id))
    index, since = derive_pointer(transitions_in(tx, task_id), task.created_at)
    if (task.current_phase_index, task.current_phase_since) != (index, since):
        logger.debug(
            "Task {} pointer {}@{} -> {}@{}",
            task_id,
            task.current_phase_index,
            task.current_phase_since,
            index,
            since,
        )
        task.current_phase_index = index
        task.current_phase_since = since
        task.touch()
        tx[TASKS].put(task.to_dict())
    return task
