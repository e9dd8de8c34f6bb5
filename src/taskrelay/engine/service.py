"""Use-case service for the task workflow.

Every mutating operation is a lock-guarded read-modify-write of the
repository. ``finish`` is the one exception: it releases the lock while the
verification collaborator runs and re-validates fresh state afterwards.
Verification and commit problems are returned in results; invariant
violations raise :class:`~taskrelay.engine.errors.WorkflowError` subclasses
before anything is written.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from taskrelay.config import WorkflowConfig
from taskrelay.engine.collaborators import Committer, Verifier
from taskrelay.engine.definition import parse_definition, validate_definition
from taskrelay.engine.errors import (
    DefinitionError,
    DependencyCycleError,
    InvalidCheckpointError,
    InvalidConfigError,
    InvalidTransitionError,
    WorkflowConflictError,
    WorkflowNotFoundError,
)
from taskrelay.engine.graph import (
    CASCADE_SKIP_SUMMARY,
    detect_cycles,
    ensure_admission,
    find_next_task,
    find_parallel_tasks,
    find_stale_active_tasks,
    is_all_terminal,
    make_task_id,
    next_task_id,
)
from taskrelay.engine.models import (
    DefinitionIssue,
    FailOutcome,
    Heartbeat,
    HistoryEntry,
    Task,
    TaskCategory,
    TaskStatus,
    TaskTimestamps,
    WorkflowState,
    WorkflowStatus,
)
from taskrelay.engine.repository import WorkflowRepository
from taskrelay.engine.summary import build_rolling_summary
from taskrelay.engine.timeutil import utc_now
from taskrelay.engine.transitions import (
    complete_task,
    dispatch_task,
    enter_finishing,
    fail_task,
    pause_workflow,
    reopen_workflow,
    require_task,
    resume_workflow,
    skip_task,
    summary_line,
)

logger = logging.getLogger(__name__)

FAILED_MARKER = "FAILED"
CONTEXT_SEPARATOR = "\n\n---\n\n"
DEFAULT_LOG_LIMIT = 30
EMPTY_TITLE_ISSUE = DefinitionIssue("error", "Task title must not be empty")


class CheckpointOutcome(str, Enum):
    """What a checkpoint did to the task."""

    DONE = "done"
    RETRY = "retry"
    FAILED = "failed"


class FinishOutcome(str, Enum):
    """Where a finalize attempt stopped."""

    NOT_READY = "not_ready"
    VERIFY_FAILED = "verify_failed"
    NEEDS_REVIEW = "needs_review"
    COMPLETED = "completed"


@dataclass(slots=True)
class InitResult:
    state: WorkflowState
    warnings: list[DefinitionIssue] = field(default_factory=list)


@dataclass(slots=True)
class DispatchItem:
    """One dispatched task together with the context handed to its worker."""

    task: Task
    context: str


@dataclass(slots=True)
class CheckpointResult:
    task_id: str
    title: str
    outcome: CheckpointOutcome
    retries: int
    max_retries: int
    done_count: int
    total: int
    all_terminal: bool
    commit_error: str | None = None
    committed: bool = False


@dataclass(slots=True)
class SkipResult:
    task_id: str
    title: str
    previous_status: TaskStatus
    changed: bool


@dataclass(slots=True)
class TaskDetails:
    task: Task
    output: str | None


@dataclass(slots=True)
class StatusReport:
    state: WorkflowState | None
    stale_task_ids: list[str] = field(default_factory=list)
    heartbeat: Heartbeat | None = None


@dataclass(slots=True)
class ResumeResult:
    state: WorkflowState | None
    reset_task_ids: list[str] = field(default_factory=list)
    finishing: bool = False
    stashed: bool = False


@dataclass(slots=True)
class ReviewResult:
    name: str
    already_reviewed: bool


@dataclass(slots=True)
class FinishResult:
    """Outcome of one finalize attempt; only ``COMPLETED`` deletes state."""

    outcome: FinishOutcome
    message: str
    scripts: list[str] = field(default_factory=list)
    error: str | None = None
    tallies: dict[str, int] = field(default_factory=dict)
    verification_reused: bool = False
    commit_error: str | None = None


class WorkflowService:
    """Coordinates graph selection, transitions, persistence and collaborators."""

    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        committer: Committer,
        verifier: Verifier,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.committer = committer
        self.verifier = verifier
        self.clock = clock

    def init(self, raw_definition: str, *, force: bool = False) -> InitResult:
        """Parse and validate a definition, then replace any non-running workflow."""

        definition = parse_definition(raw_definition)
        issues = validate_definition(definition)
        errors = [issue for issue in issues if issue.is_error]
        if errors:
            raise DefinitionError(errors)

        now = self.clock()
        tasks = [
            Task(
                id=make_task_id(position),
                title=item.title,
                timestamps=TaskTimestamps(created=now),
                description=item.description,
                category=item.category,
                deps=list(dict.fromkeys(item.deps)),
            )
            for position, item in enumerate(definition.tasks, start=1)
        ]
        cycle = detect_cycles(tasks)
        if cycle is not None:
            raise DependencyCycleError(cycle)
        state = WorkflowState(name=definition.name, started_at=now, tasks=tasks)

        with self._locked():
            existing = self.repository.load_state()
            if existing is not None:
                if existing.status == WorkflowStatus.RUNNING and not force:
                    raise WorkflowConflictError(
                        f"Workflow {existing.name!r} is still running; "
                        "use --force to replace it",
                    )
                logger.info("Replacing workflow %r", existing.name)
                self.repository.clear_all()
            self.repository.save_state(state)
            self.repository.save_definition(raw_definition)
            header = f"# {definition.name}\n"
            if definition.description:
                header += f"\n{definition.description}\n"
            self.repository.save_summary(header)
            if not self.repository.has_config():
                self.repository.save_config(WorkflowConfig())
            self._record("init", f"{definition.name} ({len(tasks)} tasks)")
            self._touch(state, "init")

        return InitResult(state=state, warnings=[issue for issue in issues if not issue.is_error])

    def next(self) -> DispatchItem | None:
        """Dispatch the first eligible task, or return ``None`` when nothing is runnable."""

        items = self._dispatch(batch=False)
        return items[0] if items else None

    def next_batch(self) -> list[DispatchItem]:
        """Dispatch every eligible task (capped by ``max_parallel``) as one batch."""

        return self._dispatch(batch=True)

    def checkpoint(
        self,
        task_id: str,
        detail: str,
        files: Sequence[str] | None = None,
        *,
        failed: bool = False,
    ) -> CheckpointResult:
        """Report the outcome of an active task."""

        with self._locked() as config:
            state = self._require_state()
            task = require_task(state, task_id)
            text = detail.strip()
            now = self.clock()

            if failed or text == FAILED_MARKER:
                reason = text if text and text != FAILED_MARKER else "reported failure"
                fail_outcome = fail_task(
                    state,
                    task_id,
                    reason,
                    max_retries=config.max_retries,
                    now=now,
                )
                self._maybe_enter_finishing(state)
                self.repository.save_state(state)
                self._record("fail", reason, task_id=task_id)
                self._touch(state, "checkpoint")
                outcome = (
                    CheckpointOutcome.RETRY
                    if fail_outcome == FailOutcome.RETRY
                    else CheckpointOutcome.FAILED
                )
                return self._checkpoint_result(state, task, outcome, config)

            if not text:
                raise InvalidCheckpointError(f"Checkpoint detail for task {task_id} is empty")
            summary = summary_line(text)
            complete_task(state, task_id, summary, now=now)
            self._maybe_enter_finishing(state)
            self.repository.save_state(state)
            self.repository.save_task_output(
                task_id,
                f"# task-{task_id}: {task.title}\n\n{text}\n",
            )
            self.repository.save_summary(
                build_rolling_summary(state.name, state.tasks, config.summary_compact_threshold),
            )
            self._record("checkpoint", summary, task_id=task_id)
            self._touch(state, "checkpoint")

            result = self._checkpoint_result(state, task, CheckpointOutcome.DONE, config)
            if config.auto_commit:
                result.commit_error = self.committer.commit(task_id, task.title, summary, files)
                result.committed = result.commit_error is None
                if result.commit_error:
                    logger.warning("Commit for task %s failed: %s", task_id, result.commit_error)
            return result

    def skip(self, task_id: str) -> SkipResult:
        with self._locked():
            state = self._require_state()
            task = require_task(state, task_id)
            previous = task.status
            if task.is_terminal:
                return SkipResult(task_id, task.title, previous_status=previous, changed=False)
            skip_task(state, task_id)
            self._maybe_enter_finishing(state)
            self.repository.save_state(state)
            self._record("skip", f"from {previous.value}", task_id=task_id)
            self._touch(state, "skip")
            return SkipResult(task_id, task.title, previous_status=previous, changed=True)

    def edit(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        category: TaskCategory | None = None,
        deps: Sequence[str] | None = None,
    ) -> Task:
        """Change a pending task; deps are re-validated against the live graph."""

        with self._locked():
            state = self._require_state()
            task = require_task(state, task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value}; only pending tasks can be edited",
                )
            if title is not None:
                if not title.strip():
                    raise DefinitionError([EMPTY_TITLE_ISSUE])
                task.title = title.strip()
            if description is not None:
                task.description = description
            if category is not None:
                task.category = category
            if deps is not None:
                new_deps = _checked_deps(state, deps, task_id=task_id)
                previous_deps = task.deps
                task.deps = new_deps
                cycle = detect_cycles(state.tasks)
                if cycle is not None:
                    task.deps = previous_deps
                    raise DependencyCycleError(cycle)
            self.repository.save_state(state)
            self._record("edit", task.title, task_id=task_id)
            self._touch(state, "edit")
            return task

    def add(
        self,
        title: str,
        *,
        category: TaskCategory = TaskCategory.GENERAL,
        description: str = "",
        deps: Sequence[str] = (),
    ) -> Task:
        """Append a pending task; a finishing workflow goes back to running."""

        with self._locked():
            state = self._require_state()
            if not title.strip():
                raise DefinitionError([EMPTY_TITLE_ISSUE])
            task = Task(
                id=next_task_id(state.tasks),
                title=title.strip(),
                timestamps=TaskTimestamps(created=self.clock()),
                description=description,
                category=category,
                deps=_checked_deps(state, deps, task_id=None),
            )
            state.tasks.append(task)
            cycle = detect_cycles(state.tasks)
            if cycle is not None:
                raise DependencyCycleError(cycle)
            if state.status == WorkflowStatus.FINISHING:
                reopen_workflow(state)
            self.repository.save_state(state)
            self._record("add", task.title, task_id=task.id)
            self._touch(state, "add")
            return task

    def show(self, task_id: str) -> TaskDetails:
        state = self._require_state()
        task = require_task(state, task_id)
        return TaskDetails(task=task, output=self.repository.load_task_output(task_id))

    def log(self, limit: int = DEFAULT_LOG_LIMIT) -> list[HistoryEntry]:
        entries = self.repository.load_history()
        return entries[-limit:] if limit > 0 else entries

    def status(self) -> StatusReport:
        state = self.repository.load_state()
        if state is None:
            return StatusReport(state=None)
        config = self.repository.load_config()
        stale = find_stale_active_tasks(
            state.tasks,
            now=self.clock(),
            stale_after=timedelta(seconds=config.active_task_stale_after_seconds),
        )
        return StatusReport(
            state=state,
            stale_task_ids=stale,
            heartbeat=self.repository.load_heartbeat(),
        )

    def pause(self) -> list[str]:
        """Stop dispatching; active tasks go back to pending."""

        with self._locked():
            state = self._require_state()
            reset_ids = pause_workflow(state)
            self.repository.save_state(state)
            self._record("pause", ", ".join(reset_ids))
            self._touch(state, "pause")
            return reset_ids

    def resume(self) -> ResumeResult:
        """Recover after an interruption: reset active tasks and keep going."""

        with self._locked() as config:
            state = self.repository.load_state()
            if state is None:
                return ResumeResult(state=None)
            if state.status == WorkflowStatus.FINISHING:
                return ResumeResult(state=state, finishing=True)
            reset_ids = resume_workflow(state)
            self.repository.save_state(state)
            self._record("resume", ", ".join(reset_ids))
            self._touch(state, "resume")
            stashed = False
            if reset_ids and config.auto_commit:
                self.committer.cleanup()
                self.committer.prune_old(config.stash_keep)
                stashed = True
            if reset_ids:
                logger.info("Reset interrupted tasks: %s", ", ".join(reset_ids))
            return ResumeResult(state=state, reset_task_ids=reset_ids, stashed=stashed)

    def review(self) -> ReviewResult:
        """Mark code review as passed; only accepted once every task is terminal."""

        with self._locked():
            state = self._require_state()
            if state.review_done:
                return ReviewResult(name=state.name, already_reviewed=True)
            enter_finishing(state)
            state.review_done = True
            self.repository.save_state(state)
            self._record("review", "passed")
            self._touch(state, "review")
            return ReviewResult(name=state.name, already_reviewed=False)

    def finish(self) -> FinishResult:
        """Two-phase finalize: verify unlocked, then re-check and clear under lock."""

        with self._locked():
            state = self._require_state()
            if not is_all_terminal(state.tasks):
                remaining = [task.id for task in state.tasks if not task.is_terminal]
                return FinishResult(
                    outcome=FinishOutcome.NOT_READY,
                    message=f"Tasks not finished yet: {', '.join(remaining)}",
                )
            if state.status != WorkflowStatus.FINISHING:
                enter_finishing(state)
                self.repository.save_state(state)
            reuse_verification = state.verified
            config = self.repository.load_config()

        if reuse_verification:
            logger.info("Verification already passed for this finalize attempt")
            scripts: list[str] = []
        else:
            verify = self.verifier.verify(config)
            scripts = list(verify.scripts)
            if not verify.passed:
                with self._locked():
                    if self.repository.load_state() is not None:
                        self._record("verify_failed", verify.error or "")
                return FinishResult(
                    outcome=FinishOutcome.VERIFY_FAILED,
                    message="Verification failed; fix the problems and run finish again",
                    scripts=scripts,
                    error=verify.error,
                )

        with self._locked() as config:
            state = self.repository.load_state()
            if state is None:
                raise WorkflowNotFoundError("Workflow was removed while verification ran")
            if state.status != WorkflowStatus.FINISHING or not is_all_terminal(state.tasks):
                raise WorkflowConflictError(
                    "Workflow changed while verification ran; run finish again",
                )
            if not state.review_done:
                state.verified = True
                self.repository.save_state(state)
                self._record("finish_needs_review", ", ".join(scripts))
                self._touch(state, "finish")
                return FinishResult(
                    outcome=FinishOutcome.NEEDS_REVIEW,
                    message="Verification passed; run `taskrelay review` and then finish again",
                    scripts=scripts,
                    verification_reused=reuse_verification,
                )

            tallies = {
                status.value: state.count(status)
                for status in (TaskStatus.DONE, TaskStatus.SKIPPED, TaskStatus.FAILED)
            }
            stats = _format_tallies(tallies)
            self.repository.clear_all()
            commit_error = None
            if config.auto_commit:
                commit_error = self.committer.commit("finish", state.name, stats)
            logger.info("Workflow %r finished: %s", state.name, stats)
            return FinishResult(
                outcome=FinishOutcome.COMPLETED,
                message=f"Workflow {state.name!r} finished: {stats}",
                scripts=scripts,
                tallies=tallies,
                verification_reused=reuse_verification,
                commit_error=commit_error,
            )

    def _dispatch(self, *, batch: bool) -> list[DispatchItem]:
        with self._locked() as config:
            state = self._require_state()
            if state.status == WorkflowStatus.IDLE:
                raise InvalidTransitionError("Workflow is paused; run `taskrelay resume` first")
            ensure_admission(state.active_task_ids)

            status_before = state.status
            pending_before = {task.id for task in state.tasks if task.status == TaskStatus.PENDING}
            if batch:
                selected = find_parallel_tasks(state.tasks, config.max_parallel)
            else:
                first = find_next_task(state.tasks)
                selected = [first] if first is not None else []
            cascaded = [
                task.id
                for task in state.tasks
                if task.id in pending_before and task.status == TaskStatus.SKIPPED
            ]
            for task_id in cascaded:
                self._record("skip", CASCADE_SKIP_SUMMARY, task_id=task_id)

            now = self.clock()
            for task in selected:
                dispatch_task(state, task, now=now)
                self._record("dispatch", task.title, task_id=task.id)
            if not selected:
                self._maybe_enter_finishing(state)
            if selected or cascaded or state.status != status_before:
                self.repository.save_state(state)
            self._touch(state, "next --batch" if batch else "next")

            summary = self.repository.load_summary()
            return [
                DispatchItem(task=task, context=self._context(task, summary)) for task in selected
            ]

    def _context(self, task: Task, summary: str) -> str:
        parts = [summary] if summary else []
        for dep_id in task.deps:
            output = self.repository.load_task_output(dep_id)
            if output:
                parts.append(output)
        return CONTEXT_SEPARATOR.join(parts)

    def _checkpoint_result(
        self,
        state: WorkflowState,
        task: Task,
        outcome: CheckpointOutcome,
        config: WorkflowConfig,
    ) -> CheckpointResult:
        return CheckpointResult(
            task_id=task.id,
            title=task.title,
            outcome=outcome,
            retries=task.retries,
            max_retries=config.max_retries,
            done_count=state.count(TaskStatus.DONE),
            total=len(state.tasks),
            all_terminal=is_all_terminal(state.tasks),
        )

    def _maybe_enter_finishing(self, state: WorkflowState) -> None:
        if state.status == WorkflowStatus.RUNNING and is_all_terminal(state.tasks):
            enter_finishing(state)
            logger.info("All tasks of %r are terminal; workflow is finishing", state.name)

    def _require_state(self) -> WorkflowState:
        state = self.repository.load_state()
        if state is None:
            raise WorkflowNotFoundError("No active workflow; run `taskrelay init` first")
        return state

    def _record(self, event: str, detail: str = "", *, task_id: str | None = None) -> None:
        self.repository.append_history(
            HistoryEntry(ts=self.clock(), event=event, detail=detail, task_id=task_id),
        )

    def _touch(self, state: WorkflowState, command: str) -> None:
        self.repository.save_heartbeat(
            Heartbeat(
                last_command=command,
                timestamp=self.clock(),
                active_task_ids=list(state.active_task_ids),
            ),
        )

    @contextmanager
    def _locked(self) -> Iterator[WorkflowConfig]:
        config = self.repository.load_config()
        try:
            config.validate()
        except ValueError as error:
            raise InvalidConfigError(f"Invalid workflow config: {error}") from error
        with self.repository.lock(
            timeout_seconds=config.lock_timeout_seconds,
            stale_after_seconds=config.lock_stale_after_seconds,
        ):
            yield config


def _checked_deps(state: WorkflowState, deps: Sequence[str], *, task_id: str | None) -> list[str]:
    known = {task.id for task in state.tasks}
    issues: list[DefinitionIssue] = []
    resolved: list[str] = []
    for raw in deps:
        dep = raw.strip()
        if not dep:
            continue
        if dep.isdigit():
            dep = make_task_id(int(dep))
        if dep == task_id:
            issues.append(DefinitionIssue("error", f"Task {task_id} cannot depend on itself"))
        elif dep not in known:
            issues.append(DefinitionIssue("error", f"Unknown dependency task id: {dep}"))
        elif dep not in resolved:
            resolved.append(dep)
    if issues:
        raise DefinitionError(issues)
    return resolved


def _format_tallies(tallies: dict[str, int]) -> str:
    parts = [f"{tallies.get(TaskStatus.DONE.value, 0)} done"]
    for status in (TaskStatus.SKIPPED, TaskStatus.FAILED):
        count = tallies.get(status.value, 0)
        if count:
            parts.append(f"{count} {status.value}")
    return ", ".join(parts)
