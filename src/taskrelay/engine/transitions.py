"""Task and workflow status transitions.

Task:     pending -> active -> done
          active  -> pending            (failure, retries < max)
          active  -> failed             (failure, retries == max)
          pending/active -> skipped     (cascade or manual)
Workflow: idle <-> running -> finishing -> (state deleted)
          finishing -> running          (task added after all were terminal)
"""

from __future__ import annotations

import logging
from datetime import datetime

from taskrelay.engine.errors import InvalidTransitionError, TaskNotFoundError
from taskrelay.engine.models import (
    FailOutcome,
    Task,
    TaskStatus,
    WorkflowState,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 80
MANUAL_SKIP_SUMMARY = "skipped manually"


def require_task(state: WorkflowState, task_id: str) -> Task:
    task = state.find_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def summary_line(detail: str) -> str:
    """First line of a checkpoint detail, truncated for the progress table."""

    first = detail.strip().splitlines()[0] if detail.strip() else ""
    return first[:SUMMARY_MAX_CHARS]


def dispatch_task(state: WorkflowState, task: Task, *, now: datetime) -> None:
    if task.status != TaskStatus.PENDING:
        raise InvalidTransitionError(
            f"Task {task.id} is {task.status.value}; only pending tasks can be dispatched",
        )
    task.status = TaskStatus.ACTIVE
    task.timestamps.started = now
    if task.id not in state.active_task_ids:
        state.active_task_ids.append(task.id)


def complete_task(state: WorkflowState, task_id: str, summary: str, *, now: datetime) -> Task:
    task = _require_active(state, task_id, action="complete")
    task.status = TaskStatus.DONE
    task.summary = summary
    task.timestamps.completed = now
    _release(state, task_id)
    return task


def fail_task(
    state: WorkflowState,
    task_id: str,
    reason: str,
    *,
    max_retries: int,
    now: datetime,
) -> FailOutcome:
    """Record one failed attempt; the retry ceiling is a one-way door to ``failed``."""

    task = _require_active(state, task_id, action="fail")
    task.retries += 1
    task.timestamps.last_failed = now
    task.fail_history.append(f"[attempt {task.retries}] {reason}")
    _release(state, task_id)
    if task.retries >= max_retries:
        task.status = TaskStatus.FAILED
        task.summary = summary_line(reason) or "failed"
        logger.info("Task %s failed permanently after %d attempts", task_id, task.retries)
        return FailOutcome.FAILED
    task.status = TaskStatus.PENDING
    task.timestamps.started = None
    return FailOutcome.RETRY


def skip_task(state: WorkflowState, task_id: str, *, summary: str = MANUAL_SKIP_SUMMARY) -> Task:
    task = require_task(state, task_id)
    if task.status not in (TaskStatus.PENDING, TaskStatus.ACTIVE):
        raise InvalidTransitionError(
            f"Task {task_id} is {task.status.value}; only pending or active tasks can be skipped",
        )
    task.status = TaskStatus.SKIPPED
    task.summary = summary
    _release(state, task_id)
    return task


def reset_active_tasks(state: WorkflowState) -> list[str]:
    """Return every checked-out task to ``pending`` and clear the active set."""

    reset_ids: list[str] = []
    for task in state.tasks:
        if task.status == TaskStatus.ACTIVE:
            task.status = TaskStatus.PENDING
            task.timestamps.started = None
            reset_ids.append(task.id)
    state.active_task_ids = []
    return reset_ids


def pause_workflow(state: WorkflowState) -> list[str]:
    if state.status != WorkflowStatus.RUNNING:
        raise InvalidTransitionError(
            f"Workflow is {state.status.value}; only a running workflow can be paused",
        )
    reset_ids = reset_active_tasks(state)
    state.status = WorkflowStatus.IDLE
    return reset_ids


def resume_workflow(state: WorkflowState) -> list[str]:
    """Move an idle/running workflow back to ``running``.

    Re-entering the dispatch loop invalidates an earlier review and
    verification, so a later finalize attempt runs both again.
    """

    if state.status == WorkflowStatus.FINISHING:
        raise InvalidTransitionError("Workflow is finishing; run `taskrelay finish` instead")
    reset_ids = reset_active_tasks(state)
    reopen_workflow(state)
    return reset_ids


def reopen_workflow(state: WorkflowState) -> None:
    """Return to ``running`` and drop both finalize gates."""

    state.status = WorkflowStatus.RUNNING
    state.review_done = False
    state.verified = False


def enter_finishing(state: WorkflowState) -> None:
    if not all(task.is_terminal for task in state.tasks):
        raise InvalidTransitionError("Some tasks are not finished yet; complete them first")
    state.status = WorkflowStatus.FINISHING


def _require_active(state: WorkflowState, task_id: str, *, action: str) -> Task:
    task = require_task(state, task_id)
    if task.status != TaskStatus.ACTIVE:
        raise InvalidTransitionError(
            f"Task {task_id} is {task.status.value}; only active tasks can {action}",
        )
    return task


def _release(state: WorkflowState, task_id: str) -> None:
    state.active_task_ids = [item for item in state.active_task_ids if item != task_id]
