"""Error taxonomy for workflow invariant violations."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskrelay.engine.models import DefinitionIssue


class WorkflowError(RuntimeError):
    """Base class for fatal workflow errors surfaced to the caller."""


class DefinitionError(WorkflowError):
    """Task definition rejected before any state was written."""

    def __init__(self, issues: Sequence[DefinitionIssue]) -> None:
        self.issues = list(issues)
        lines = "\n".join(f"- {issue.message}" for issue in self.issues)
        super().__init__(f"Invalid task definition:\n{lines}")


class DependencyCycleError(WorkflowError):
    """Dependency graph of non-terminal tasks contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class LockTimeoutError(WorkflowError):
    """State lock could not be acquired within the configured wait."""


class BatchInFlightError(WorkflowError):
    """New work requested while a dispatched batch is still unreported."""

    def __init__(self, active_task_ids: Sequence[str]) -> None:
        self.active_task_ids = list(active_task_ids)
        super().__init__(
            f"{len(self.active_task_ids)} task(s) still active "
            f"({', '.join(self.active_task_ids)}). "
            "Checkpoint them first, or run `taskrelay resume` to reset them.",
        )


class WorkflowNotFoundError(WorkflowError):
    """No workflow has been initialized in this project."""


class WorkflowConflictError(WorkflowError):
    """A running workflow would be overwritten."""


class TaskNotFoundError(WorkflowError):
    """Unknown task id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} does not exist")


class InvalidTransitionError(WorkflowError):
    """Requested status change is not allowed from the current status."""


class InvalidConfigError(WorkflowError):
    """Settings or the workflow config file hold unusable values."""


class InvalidCheckpointError(WorkflowError):
    """Checkpoint report is missing the result detail."""
