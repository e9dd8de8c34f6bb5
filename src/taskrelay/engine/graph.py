"""Dependency graph resolution and work selection.

Everything here is a pure function over an in-memory task list; the only
mutation is :func:`cascade_skip`, which marks blocked pending tasks as
skipped in place.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from taskrelay.engine.errors import BatchInFlightError, DependencyCycleError
from taskrelay.engine.models import BLOCKING_STATUSES, Task, TaskStatus

logger = logging.getLogger(__name__)

CASCADE_SKIP_SUMMARY = "skipped: dependency failed"


def make_task_id(number: int) -> str:
    """Render a sequence number as a zero-padded (3+ digit) task id."""

    return str(number).zfill(3)


def next_task_id(tasks: Iterable[Task]) -> str:
    """Next id after the highest numeric id in use; ids are never reused."""

    highest = 0
    for task in tasks:
        if task.id.isdigit():
            highest = max(highest, int(task.id))
    return make_task_id(highest + 1)


def is_all_terminal(tasks: Iterable[Task]) -> bool:
    return all(task.is_terminal for task in tasks)


def detect_cycles(tasks: Sequence[Task]) -> list[str] | None:
    """Return one dependency cycle among non-terminal tasks, or ``None``.

    The cycle is reported in dependency order and closed, e.g.
    ``["001", "002", "001"]`` means 001 depends on 002 which depends on 001.
    Edges into terminal or unknown tasks are ignored.
    """

    live = {task.id: task for task in tasks if not task.is_terminal}
    visited: set[str] = set()
    on_stack: set[str] = set()
    parent: dict[str, str] = {}

    for root_id in live:
        if root_id in visited:
            continue
        visited.add(root_id)
        on_stack.add(root_id)
        stack: list[tuple[str, Iterable[str]]] = [(root_id, iter(live[root_id].deps))]
        while stack:
            node_id, pending_deps = stack[-1]
            advanced = False
            for dep_id in pending_deps:
                if dep_id not in live:
                    continue
                if dep_id in on_stack:
                    return _close_cycle(start=dep_id, end=node_id, parent=parent)
                if dep_id not in visited:
                    parent[dep_id] = node_id
                    visited.add(dep_id)
                    on_stack.add(dep_id)
                    stack.append((dep_id, iter(live[dep_id].deps)))
                    advanced = True
                    break
            if not advanced:
                on_stack.discard(node_id)
                stack.pop()
    return None


def _close_cycle(*, start: str, end: str, parent: dict[str, str]) -> list[str]:
    path = [start]
    current = end
    while current != start:
        path.append(current)
        current = parent[current]
    path.append(start)
    path.reverse()
    return path


def cascade_skip(tasks: Sequence[Task]) -> list[str]:
    """Skip every pending task that transitively depends on a failed/skipped one.

    Work-list propagation over reverse edges: only dependents of tasks that
    just became blocking are re-examined. Returns the ids skipped by this
    call in the order they were skipped.
    """

    dependents: dict[str, list[Task]] = {}
    for task in tasks:
        for dep_id in task.deps:
            dependents.setdefault(dep_id, []).append(task)

    queue = deque(task.id for task in tasks if task.status in BLOCKING_STATUSES)
    skipped: list[str] = []
    while queue:
        blocker_id = queue.popleft()
        for dependent in dependents.get(blocker_id, ()):
            if dependent.status != TaskStatus.PENDING:
                continue
            dependent.status = TaskStatus.SKIPPED
            dependent.summary = CASCADE_SKIP_SUMMARY
            skipped.append(dependent.id)
            queue.append(dependent.id)
    if skipped:
        logger.info("Cascade-skipped tasks: %s", ", ".join(skipped))
    return skipped


def ensure_admission(active_task_ids: Sequence[str]) -> None:
    """Refuse new work while a dispatched batch is still unreported."""

    if active_task_ids:
        raise BatchInFlightError(active_task_ids)


def find_next_task(tasks: Sequence[Task]) -> Task | None:
    """First eligible pending task in definition order."""

    eligible = _eligible_tasks(tasks)
    return eligible[0] if eligible else None


def find_parallel_tasks(tasks: Sequence[Task], max_parallel: int | None = None) -> list[Task]:
    """All eligible pending tasks in definition order, optionally capped."""

    eligible = _eligible_tasks(tasks)
    if max_parallel is not None and max_parallel > 0:
        return eligible[:max_parallel]
    return eligible


def _eligible_tasks(tasks: Sequence[Task]) -> list[Task]:
    cycle = detect_cycles(tasks)
    if cycle is not None:
        raise DependencyCycleError(cycle)
    cascade_skip(tasks)
    by_id = {task.id: task for task in tasks}
    eligible: list[Task] = []
    for task in tasks:
        if task.status != TaskStatus.PENDING:
            continue
        if all(_dep_done(by_id, dep_id) for dep_id in task.deps):
            eligible.append(task)
    return eligible


def _dep_done(by_id: dict[str, Task], dep_id: str) -> bool:
    dep = by_id.get(dep_id)
    return dep is not None and dep.status == TaskStatus.DONE


def find_stale_active_tasks(
    tasks: Iterable[Task],
    *,
    now: datetime,
    stale_after: timedelta,
) -> list[str]:
    """Ids of active tasks checked out longer than ``stale_after``.

    Not part of any automatic sweep; callers decide what to do with it.
    """

    stale: list[str] = []
    for task in tasks:
        if task.status != TaskStatus.ACTIVE:
            continue
        started = task.timestamps.started
        if started is None or now - started > stale_after:
            stale.append(task.id)
    return stale
