"""Domain models for tracker tasks and their derived board state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    """Tracker-owned task status."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    BLOCKED = "blocked"


class DependencyKind(str, Enum):
    """Dependency edge kinds reported by the tracker."""

    BLOCKS = "blocks"
    PARENT_CHILD = "parent-child"
    RELATED = "related"


class KanbanColumn(str, Enum):
    """Derived eligibility/progress state of a task."""

    PLANNING = "planning"
    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    BLOCKED = "blocked"


ISSUE_TYPES = ("bug", "feature", "task", "epic", "chore")


@dataclass(frozen=True, slots=True)
class TaskDependency:
    """One dependency edge pointing at another task."""

    target_id: str
    kind: DependencyKind


@dataclass(frozen=True, slots=True)
class Task:
    """Read-only view of a tracker task.

    The kanban column is not stored; it is recomputed from status, dependency
    edges and the ready set on every read.
    """

    id: str
    title: str
    status: TaskStatus = TaskStatus.OPEN
    project_id: str | None = None
    priority: int = 1
    assignee: str | None = None
    issue_type: str = "task"
    dependencies: tuple[TaskDependency, ...] = field(default_factory=tuple)

    @property
    def epic_id(self) -> str | None:
        return extract_epic_id(self.id)

    def blocking_dependencies(self) -> tuple[TaskDependency, ...]:
        """Return `blocks` edges in declared order."""

        return tuple(dep for dep in self.dependencies if dep.kind is DependencyKind.BLOCKS)


def extract_epic_id(task_id: str | None) -> str | None:
    """Epic id is the task id up to its last dot (``os-abc.3`` -> ``os-abc``)."""

    if not task_id:
        return None
    last_dot = task_id.rfind(".")
    if last_dot <= 0:
        return None
    return task_id[:last_dot]
