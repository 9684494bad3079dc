"""Task readiness resolution over the tracker's dependency graph."""

from agent_dispatch.tasks.models import (
    DependencyKind,
    KanbanColumn,
    Task,
    TaskDependency,
    TaskStatus,
)
from agent_dispatch.tasks.readiness import (
    build_ready_set,
    extract_epic_id,
    is_gate_task,
    resolve_column,
    resolve_columns,
    task_from_issue,
)

__all__ = [
    "DependencyKind",
    "KanbanColumn",
    "Task",
    "TaskDependency",
    "TaskStatus",
    "build_ready_set",
    "extract_epic_id",
    "is_gate_task",
    "resolve_column",
    "resolve_columns",
    "task_from_issue",
]
