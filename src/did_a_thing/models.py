"""Task, phase and transition records.

Records are plain dataclasses that serialize to the flat dicts the store
persists.  ``id`` is ``None`` until the store assigns one.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from loguru import logger

from .utils import _now_iso


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class Task:
    """A trackable activity and its cached position in its cycle."""

    id: Optional[int] = None
    title: str = ""
    current_phase_index: int = 0
    current_phase_since: str = ""
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def __post_init__(self) -> None:
        if not self.current_phase_since:
            self.current_phase_since = self.created_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        created_at = data.get("created_at")
        if not created_at:
            created_at = _now_iso()
            logger.warning("Task {} has no created_at; using {}", data.get("id"), created_at)
        created_at = str(created_at)
        return cls(
            id=_opt_int(data.get("id")),
            title=str(data.get("title") or ""),
            current_phase_index=int(data.get("current_phase_index") or 0),
            current_phase_since=str(data.get("current_phase_since") or created_at),
            created_at=created_at,
            updated_at=str(data.get("updated_at") or created_at),
        )

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()


@dataclass
class Phase:
    id: Optional[int] = None
    task_id: int = 0
    index: int = 0
    name: str = ""
    duration_days: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Phase":
        duration = data.get("duration_days")
        return cls(
            id=_opt_int(data.get("id")),
            task_id=int(data.get("task_id") or 0),
            index=int(data.get("index") or 0),
            name=str(data.get("name") or ""),
            duration_days=float(duration) if duration is not None else None,
        )


@dataclass
class Transition:
    """Immutable log entry: a task moved between two phase indices at a time."""

    id: Optional[int] = None
    task_id: int = 0
    from_phase_index: int = 0
    to_phase_index: int = 0
    transitioned_at: str = field(default_factory=_now_iso)

    @property
    def is_self_loop(self) -> bool:
        return self.from_phase_index == self.to_phase_index

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transition":
        return cls(
            id=_opt_int(data.get("id")),
            task_id=int(data.get("task_id") or 0),
            from_phase_index=int(data.get("from_phase_index") or 0),
            to_phase_index=int(data.get("to_phase_index") or 0),
            transitioned_at=str(data.get("transitioned_at") or _now_iso()),
        )


@dataclass
class TaskOverview:
    """A task joined with what the list view needs to render it."""

    task: Task
    phases: list[Phase] = field(default_factory=list)
    last_transition: Optional[Transition] = None

    @property
    def is_single_step(self) -> bool:
        return len(self.phases) == 1

    @property
    def current_phase(self) -> Optional[Phase]:
        for phase in self.phases:
            if phase.index == self.task.current_phase_index:
                return phase
        return None

    @property
    def display_timestamp(self) -> str:
        if self.last_transition is not None:
            return self.last_transition.transitioned_at
        return self.task.created_at

    def to_dict(self) -> dict[str, Any]:
        current = self.current_phase
        return {
            "task": self.task.to_dict(),
            "phases": [p.to_dict() for p in self.phases],
            "current_phase_name": current.name if current else None,
            "last_transition": self.last_transition.to_dict() if self.last_transition else None,
            "display_timestamp": self.display_timestamp,
        }
