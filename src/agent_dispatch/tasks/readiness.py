"""Kanban column resolution from task status and the dependency graph."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from agent_dispatch.tasks.models import (
    ISSUE_TYPES,
    DependencyKind,
    KanbanColumn,
    Task,
    TaskDependency,
    TaskStatus,
    extract_epic_id,
)

logger = logging.getLogger(__name__)

GATE_ID_SUFFIX = ".0"
GATE_TITLE = "Plan approval gate"


def resolve_column(
    task: Task,
    all_tasks: Mapping[str, Task] | Iterable[Task],
    ready_ids: set[str] | frozenset[str],
) -> KanbanColumn:
    """Return the single kanban column for ``task``.

    ``all_tasks`` holds every task of the project (for dependency lookups);
    ``ready_ids`` is the tracker's precomputed ready set.
    """

    if task.status is TaskStatus.CLOSED:
        return KanbanColumn.DONE
    if task.status is TaskStatus.BLOCKED:
        return KanbanColumn.BLOCKED
    if task.status is TaskStatus.IN_PROGRESS and task.assignee:
        return KanbanColumn.IN_PROGRESS

    by_id = _index(all_tasks)
    for dependency in task.blocking_dependencies():
        target = by_id.get(dependency.target_id)
        if target is None or target.status is not TaskStatus.OPEN:
            continue
        if is_gate_task(target):
            return KanbanColumn.PLANNING
        return KanbanColumn.BACKLOG

    return KanbanColumn.READY if task.id in ready_ids else KanbanColumn.BACKLOG


def resolve_columns(
    tasks: Iterable[Task],
    ready_ids: set[str] | frozenset[str],
    *,
    review_task_id: str | None = None,
) -> dict[str, KanbanColumn]:
    """Resolve columns for every task of a project.

    The task currently under review is shown as ``in_review`` while the
    tracker still reports it in progress.
    """

    by_id = _index(tasks)
    columns = {task_id: resolve_column(task, by_id, ready_ids) for task_id, task in by_id.items()}
    if review_task_id is not None and columns.get(review_task_id) is KanbanColumn.IN_PROGRESS:
        columns[review_task_id] = KanbanColumn.IN_REVIEW
    return columns


def build_ready_set(ready_tasks: Iterable[Task]) -> frozenset[str]:
    """Ready ids from the tracker, excluding epics (containers, not work items)."""

    return frozenset(task.id for task in ready_tasks if task.issue_type != "epic")


def is_gate_task(task: Task) -> bool:
    return task.id.endswith(GATE_ID_SUFFIX) or task.title == GATE_TITLE


def task_from_issue(raw: Mapping[str, Any], *, project_id: str | None = None) -> Task:
    """Normalize a tracker issue payload into a :class:`Task`.

    Accepts both dependency shapes the tracker emits: ``{depends_on_id, type}``
    from list output and ``{id, dependency_type}`` from show output.
    """

    issue_id = str(raw.get("id") or "")
    if not issue_id:
        raise ValueError("Tracker issue is missing an id.")

    return Task(
        id=issue_id,
        title=str(raw.get("title") or ""),
        status=_parse_status(raw.get("status")),
        project_id=project_id,
        priority=_clamp_priority(raw.get("priority")),
        assignee=raw.get("assignee") or None,
        issue_type=_normalize_issue_type(raw.get("issue_type", raw.get("type"))),
        dependencies=tuple(
            dependency
            for dependency in (_parse_dependency(item) for item in raw.get("dependencies") or ())
            if dependency is not None
        ),
    )


def _index(tasks: Mapping[str, Task] | Iterable[Task]) -> Mapping[str, Task]:
    if isinstance(tasks, Mapping):
        return tasks
    return {task.id: task for task in tasks}


def _parse_status(value: object) -> TaskStatus:
    if value is None:
        return TaskStatus.OPEN
    try:
        return TaskStatus(str(value).strip().lower())
    except ValueError:
        logger.warning("Unknown task status %r; treating it as open", value)
        return TaskStatus.OPEN


def _clamp_priority(value: object) -> int:
    if value is None:
        return 1
    try:
        priority = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 1
    return min(4, max(0, priority))


def _normalize_issue_type(value: object) -> str:
    if isinstance(value, str) and value in ISSUE_TYPES:
        return value
    return "task"


def _parse_dependency(raw: object) -> TaskDependency | None:
    if not isinstance(raw, Mapping):
        return None
    target_id = raw.get("depends_on_id") or raw.get("id")
    kind = raw.get("type") or raw.get("dependency_type")
    if not target_id or not kind:
        return None
    try:
        return TaskDependency(target_id=str(target_id), kind=DependencyKind(str(kind)))
    except ValueError:
        return None
