"""Controllers for workflow CLI commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from taskrelay.config import Settings
from taskrelay.engine.collaborators import CommandVerifier, GitCommitter, NullCommitter
from taskrelay.engine.errors import InvalidConfigError
from taskrelay.engine.fs_repository import FileWorkflowRepository
from taskrelay.engine.models import Task, TaskCategory, TaskStatus, WorkflowStatus
from taskrelay.engine.service import (
    CheckpointOutcome,
    DispatchItem,
    FinishOutcome,
    WorkflowService,
)

_STATUS_MARKERS = {
    TaskStatus.PENDING: " ",
    TaskStatus.ACTIVE: ">",
    TaskStatus.DONE: "x",
    TaskStatus.SKIPPED: "-",
    TaskStatus.FAILED: "!",
}


@dataclass(slots=True)
class WorkflowCommand:
    """CLI input for commands that only need the project root."""

    root: Path | None


@dataclass(slots=True)
class InitCommand:
    """CLI input for workflow initialization."""

    root: Path | None
    definition: str
    force: bool = False


@dataclass(slots=True)
class NextCommand:
    """CLI input for dispatching the next task or batch."""

    root: Path | None
    batch: bool = False


@dataclass(slots=True)
class CheckpointCommand:
    """CLI input for reporting a task outcome."""

    root: Path | None
    task_id: str
    detail: str
    files: tuple[str, ...] = ()
    failed: bool = False


@dataclass(slots=True)
class TaskCommand:
    """CLI input addressing one task."""

    root: Path | None
    task_id: str


@dataclass(slots=True)
class EditCommand:
    """CLI input for editing a pending task."""

    root: Path | None
    task_id: str
    title: str | None = None
    description: str | None = None
    category: str | None = None
    deps: tuple[str, ...] | None = None


@dataclass(slots=True)
class AddCommand:
    """CLI input for appending a task."""

    root: Path | None
    title: str
    category: str = TaskCategory.GENERAL.value
    description: str = ""
    deps: tuple[str, ...] = ()


@dataclass(slots=True)
class LogCommand:
    """CLI input for history listing."""

    root: Path | None
    limit: int = 30


@dataclass(slots=True)
class CommandResult:
    """Rendered lines plus whether the CLI should exit successfully."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


class WorkflowCliController:
    """Coordinates workflow service calls and renders their results as text."""

    def init(self, command: InitCommand) -> list[str]:
        service = _service(command.root)
        result = service.init(command.definition, force=command.force)
        lines = [
            f"Workflow initialized: {result.state.name} ({len(result.state.tasks)} tasks)",
        ]
        lines.extend(_task_line(task) for task in result.state.tasks)
        lines.extend(f"Warning: {issue.message}" for issue in result.warnings)
        return lines

    def next(self, command: NextCommand) -> list[str]:
        service = _service(command.root)
        items = service.next_batch() if command.batch else _as_list(service.next())
        if items:
            lines: list[str] = []
            if command.batch:
                lines.append(f"Dispatched {len(items)} task(s) in parallel.")
            for index, item in enumerate(items):
                if index:
                    lines.append("")
                lines.extend(_dispatch_lines(item))
            return lines

        report = service.status()
        if report.state is not None and report.state.status == WorkflowStatus.FINISHING:
            return ["All tasks are finished. Run `taskrelay finish` to verify and close out."]
        return ["No runnable tasks right now."]

    def checkpoint(self, command: CheckpointCommand) -> list[str]:
        service = _service(command.root)
        result = service.checkpoint(
            command.task_id,
            command.detail,
            list(command.files) or None,
            failed=command.failed,
        )
        if result.outcome == CheckpointOutcome.RETRY:
            return [
                f"Task {result.task_id} failed (attempt {result.retries}/{result.max_retries}); "
                "it will be retried.",
            ]
        if result.outcome == CheckpointOutcome.FAILED:
            lines = [
                f"Task {result.task_id} failed {result.retries} times and is marked failed; "
                "dependent tasks will be skipped.",
            ]
        else:
            suffix = " [committed]" if result.committed else ""
            lines = [
                f"Task {result.task_id} done ({result.done_count}/{result.total}){suffix}",
            ]
            if result.commit_error:
                lines.append(f"Commit failed: {result.commit_error}")
        if result.all_terminal:
            lines.append("All tasks are finished. Run `taskrelay finish` to close out.")
        return lines

    def skip(self, command: TaskCommand) -> list[str]:
        result = _service(command.root).skip(command.task_id)
        if not result.changed:
            if result.previous_status == TaskStatus.DONE:
                return [f"Task {result.task_id} is already done; nothing to skip."]
            return [f"Task {result.task_id} is already {result.previous_status.value}."]
        lines = [f"Skipped task {result.task_id}: {result.title}"]
        if result.previous_status == TaskStatus.ACTIVE:
            lines.append(
                "Warning: the task was active; any work in progress for it is now orphaned.",
            )
        return lines

    def edit(self, command: EditCommand) -> list[str]:
        task = _service(command.root).edit(
            command.task_id,
            title=command.title,
            description=command.description,
            category=TaskCategory.parse(command.category) if command.category else None,
            deps=list(command.deps) if command.deps is not None else None,
        )
        return [f"Updated task {task.id}", _task_line(task)]

    def add(self, command: AddCommand) -> list[str]:
        task = _service(command.root).add(
            command.title,
            category=TaskCategory.parse(command.category),
            description=command.description,
            deps=list(command.deps),
        )
        return [f"Added task {task.id}: {task.title} [{task.category.value}]"]

    def show(self, command: TaskCommand) -> list[str]:
        details = _service(command.root).show(command.task_id)
        task = details.task
        lines = [
            f"Task {task.id}: {task.title}",
            f"Status: {task.status.value}",
            f"Category: {task.category.value}",
            f"Deps: {', '.join(task.deps) if task.deps else '-'}",
            f"Retries: {task.retries}",
            f"Summary: {task.summary or '-'}",
        ]
        if task.description:
            lines.extend(["Description:", *task.description.splitlines()])
        if task.fail_history:
            lines.append("Fail history:")
            lines.extend(f"  {reason}" for reason in task.fail_history)
        if details.output:
            lines.extend(["Output:", *details.output.rstrip().splitlines()])
        return lines

    def log(self, command: LogCommand) -> list[str]:
        entries = _service(command.root).log(command.limit)
        if not entries:
            return ["No history yet."]
        return [
            f"{entry.ts.isoformat(timespec='seconds')} {entry.event:<20} "
            f"{entry.task_id or '-':<5} {entry.detail}".rstrip()
            for entry in entries
        ]

    def status(self, command: WorkflowCommand) -> list[str]:
        report = _service(command.root).status()
        state = report.state
        if state is None:
            return ["No active workflow. Run `taskrelay init` to start one."]
        lines = [
            f"Workflow: {state.name}",
            f"Status: {state.status.value}",
            f"Progress: {state.count(TaskStatus.DONE)}/{len(state.tasks)} done, "
            f"{state.count(TaskStatus.SKIPPED)} skipped, {state.count(TaskStatus.FAILED)} failed",
        ]
        if state.active_task_ids:
            lines.append(f"Active: {', '.join(state.active_task_ids)}")
        if state.review_done:
            lines.append("Review: passed")
        lines.extend(_task_line(task) for task in state.tasks)
        if report.stale_task_ids:
            lines.append(
                "Warning: tasks active for too long (run `taskrelay resume` if their worker died): "
                + ", ".join(report.stale_task_ids),
            )
        if report.heartbeat is not None:
            lines.append(
                f"Last command: {report.heartbeat.last_command} at "
                f"{report.heartbeat.timestamp.isoformat(timespec='seconds')}",
            )
        return lines

    def pause(self, command: WorkflowCommand) -> list[str]:
        reset_ids = _service(command.root).pause()
        lines = ["Workflow paused."]
        if reset_ids:
            lines.append(f"Returned to pending: {', '.join(reset_ids)}")
        return lines

    def resume(self, command: WorkflowCommand) -> list[str]:
        result = _service(command.root).resume()
        state = result.state
        if state is None:
            return ["No active workflow. Run `taskrelay init` to start one."]
        if result.finishing:
            return [
                f"Workflow {state.name} is finishing. Run `taskrelay finish` to continue.",
            ]
        lines = [
            f"Resumed workflow: {state.name}",
            f"Progress: {state.count(TaskStatus.DONE)}/{len(state.tasks)}",
        ]
        if result.reset_task_ids:
            lines.append(
                f"Interrupted tasks reset to pending: {', '.join(result.reset_task_ids)}",
            )
            if result.stashed:
                lines.append("Uncommitted changes were stashed.")
        else:
            lines.append("Nothing was interrupted; continue with `taskrelay next`.")
        return lines

    def review(self, command: WorkflowCommand) -> list[str]:
        result = _service(command.root).review()
        if result.already_reviewed:
            return ["Review already recorded. Run `taskrelay finish`."]
        return [f"Review recorded for {result.name}. Run `taskrelay finish` to close out."]

    def finish(self, command: WorkflowCommand) -> CommandResult:
        result = _service(command.root).finish()
        lines = [result.message]
        if result.verification_reused:
            lines.append("Verification: passed earlier in this finalize attempt")
        elif result.scripts:
            lines.append(f"Verification: {', '.join(result.scripts)}")
        elif result.outcome in (FinishOutcome.NEEDS_REVIEW, FinishOutcome.COMPLETED):
            lines.append("Verification: no commands configured")
        if result.error:
            lines.append(result.error)
        if result.commit_error:
            lines.append(f"Final commit failed: {result.commit_error}")
        success = result.outcome in (FinishOutcome.NEEDS_REVIEW, FinishOutcome.COMPLETED)
        return CommandResult(lines=lines, success=success)


def _service(root: Path | None) -> WorkflowService:
    try:
        settings = Settings.from_env(root=root)
        settings.validate()
    except ValueError as error:
        raise InvalidConfigError(str(error)) from error
    repository = FileWorkflowRepository(
        settings.root,
        state_dir_name=settings.state_dir_name,
        poll_interval_seconds=settings.lock_poll_seconds,
    )
    return WorkflowService(
        repository=repository,
        committer=GitCommitter(settings.root) if settings.git_enabled else NullCommitter(),
        verifier=CommandVerifier(settings.root),
    )


def _as_list(item: DispatchItem | None) -> list[DispatchItem]:
    return [item] if item is not None else []


def _task_line(task: Task) -> str:
    deps = f" (deps: {', '.join(task.deps)})" if task.deps else ""
    summary = f" - {task.summary}" if task.summary else ""
    return (
        f"[{_STATUS_MARKERS[task.status]}] {task.id} [{task.category.value}] "
        f"{task.title}{deps}{summary}"
    )


def _dispatch_lines(item: DispatchItem) -> list[str]:
    task = item.task
    lines = [f"Task {task.id}: {task.title} [{task.category.value}]"]
    if task.deps:
        lines.append(f"Deps: {', '.join(task.deps)}")
    if task.description:
        lines.extend(["Description:", *task.description.splitlines()])
    if item.context:
        lines.extend(["Context:", *item.context.rstrip().splitlines()])
    lines.append(f"When done: taskrelay checkpoint {task.id} <summary of what was produced>")
    return lines
