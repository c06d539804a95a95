"""Backup document: every task, phase and transition plus metadata.

The document is validated with pydantic on the way back in, then checked for
referential integrity before anything is written.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import DEFAULT_SORT, EXPORT_APP_TAG, SCHEMA_VERSION, VALID_SORTS
from .errors import ValidationFailure
from .utils import _now_iso, _to_iso


def _timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    iso = _to_iso(value)
    if iso is None:
        raise ValueError(f"not a timestamp: {value!r}")
    return iso


class TaskRecord(BaseModel):
    id: int = Field(ge=1)
    title: str = Field(min_length=1)
    current_phase_index: int = Field(default=0, ge=0)
    current_phase_since: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @field_validator("current_phase_since", "created_at", "updated_at", mode="before")
    @classmethod
    def normalize_times(cls, value: Any) -> Optional[str]:
        return _timestamp(value)


class PhaseRecord(BaseModel):
    id: int = Field(ge=1)
    task_id: int = Field(ge=1)
    index: int = Field(ge=0)
    name: str = Field(min_length=1)
    duration_days: Optional[float] = Field(default=None, ge=0)


class TransitionRecord(BaseModel):
    id: int = Field(ge=1)
    task_id: int = Field(ge=1)
    from_phase_index: int = Field(ge=0)
    to_phase_index: int = Field(ge=0)
    transitioned_at: str

    @field_validator("transitioned_at", mode="before")
    @classmethod
    def normalize_time(cls, value: Any) -> Optional[str]:
        return _timestamp(value)


class ExportDocument(BaseModel):
    app: str = EXPORT_APP_TAG
    schema_version: int = SCHEMA_VERSION
    exported_at: str = Field(default_factory=_now_iso)
    sort_by: str = DEFAULT_SORT
    tasks: list[TaskRecord] = Field(default_factory=list)
    phases: list[PhaseRecord] = Field(default_factory=list)
    transitions: list[TransitionRecord] = Field(default_factory=list)


def build_export(
    tasks: list[dict[str, Any]],
    phases: list[dict[str, Any]],
    transitions: list[dict[str, Any]],
    *,
    sort_by: str = DEFAULT_SORT,
) -> dict[str, Any]:
    return {
        "app": EXPORT_APP_TAG,
        "schema_version": SCHEMA_VERSION,
        "exported_at": _now_iso(),
        "sort_by": sort_by,
        "tasks": tasks,
        "phases": phases,
        "transitions": transitions,
    }


def check_integrity(doc: ExportDocument) -> list[str]:
    """Return relationship problems (empty = consistent)."""
    errors: list[str] = []
    for label, records in (("task", doc.tasks), ("phase", doc.phases), ("transition", doc.transitions)):
        seen: set[int] = set()
        for record in records:
            if record.id in seen:
                errors.append(f"duplicate {label} id {record.id}")
            seen.add(record.id)

    task_ids = {t.id for t in doc.tasks}
    phase_counts: dict[int, int] = {}
    slots: set[tuple[int, int]] = set()
    for phase in doc.phases:
        if phase.task_id not in task_ids:
            errors.append(f"phase {phase.id} references missing task {phase.task_id}")
            continue
        if (phase.task_id, phase.index) in slots:
            errors.append(f"task {phase.task_id} has more than one phase at index {phase.index}")
        slots.add((phase.task_id, phase.index))
        phase_counts[phase.task_id] = phase_counts.get(phase.task_id, 0) + 1

    for task in doc.tasks:
        if not phase_counts.get(task.id):
            errors.append(f"task {task.id} has no phases")

    for transition in doc.transitions:
        if transition.task_id not in task_ids:
            errors.append(f"transition {transition.id} references missing task {transition.task_id}")
            continue
        count = phase_counts.get(transition.task_id, 0)
        if transition.from_phase_index >= count or transition.to_phase_index >= count:
            errors.append(f"transition {transition.id} points outside the phases of task {transition.task_id}")
    return errors


def parse_export(document: Any) -> ExportDocument:
    """Validate an export document, raising :class:`ValidationFailure` on any problem."""
    if not isinstance(document, dict):
        raise ValidationFailure("Import document must be an object")
    try:
        doc = ExportDocument.model_validate(document)
    except ValidationError as exc:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ValidationFailure("Import document is malformed", problems) from exc

    if doc.app != EXPORT_APP_TAG:
        raise ValidationFailure(f"Not a {EXPORT_APP_TAG} export (app={doc.app!r})")
    if doc.schema_version > SCHEMA_VERSION:
        raise ValidationFailure(
            f"Export schema version {doc.schema_version} is newer than supported version {SCHEMA_VERSION}"
        )
    if doc.sort_by not in VALID_SORTS:
        doc.sort_by = DEFAULT_SORT

    problems = check_integrity(doc)
    if problems:
        raise ValidationFailure("Import document is inconsistent", problems)
    return doc
