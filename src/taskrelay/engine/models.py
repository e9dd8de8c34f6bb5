"""Domain models for workflow state, tasks and sidecar records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskrelay.engine.timeutil import from_iso, to_iso


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.SKIPPED, TaskStatus.FAILED})
BLOCKING_STATUSES = frozenset({TaskStatus.SKIPPED, TaskStatus.FAILED})


class WorkflowStatus(str, Enum):
    """Workflow aggregate lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHING = "finishing"


class TaskCategory(str, Enum):
    """Closed set of handling hints passed to the dispatched worker."""

    FRONTEND = "frontend"
    BACKEND = "backend"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: str | None) -> TaskCategory:
        """Map free text to a category, falling back to ``general``."""

        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.GENERAL


class FailOutcome(str, Enum):
    """Result of recording one failed attempt."""

    RETRY = "retry"
    FAILED = "failed"


@dataclass(slots=True)
class TaskTimestamps:
    """Per-task lifecycle timestamps."""

    created: datetime
    started: datetime | None = None
    completed: datetime | None = None
    last_failed: datetime | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "created": to_iso(self.created),
            "started": to_iso(self.started),
            "completed": to_iso(self.completed),
            "last_failed": to_iso(self.last_failed),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, default_created: datetime) -> TaskTimestamps:
        return cls(
            created=from_iso(payload.get("created")) or default_created,
            started=from_iso(payload.get("started")),
            completed=from_iso(payload.get("completed")),
            last_failed=from_iso(payload.get("last_failed")),
        )


@dataclass(slots=True)
class Task:
    """One dispatchable unit of work in the dependency graph."""

    id: str
    title: str
    timestamps: TaskTimestamps
    description: str = ""
    category: TaskCategory = TaskCategory.GENERAL
    status: TaskStatus = TaskStatus.PENDING
    deps: list[str] = field(default_factory=list)
    summary: str = ""
    retries: int = 0
    fail_history: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class WorkflowState:
    """Root aggregate persisted as the progress document."""

    name: str
    started_at: datetime
    status: WorkflowStatus = WorkflowStatus.RUNNING
    active_task_ids: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    review_done: bool = False
    verified: bool = False

    def find_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def count(self, status: TaskStatus) -> int:
        return sum(1 for task in self.tasks if task.status == status)


@dataclass(slots=True)
class TaskDefinition:
    """One task as supplied by the definition parser."""

    title: str
    category: TaskCategory = TaskCategory.GENERAL
    deps: list[str] = field(default_factory=list)
    description: str = ""


@dataclass(slots=True)
class WorkflowDefinition:
    """Parsed workflow definition, deps already mapped to system ids."""

    name: str
    description: str = ""
    tasks: list[TaskDefinition] = field(default_factory=list)


@dataclass(slots=True)
class DefinitionIssue:
    """Validator finding for a workflow definition."""

    severity: str
    message: str

    @property
    def is_error(self) -> bool:
        return self.severity == "error"


@dataclass(slots=True)
class HistoryEntry:
    """Append-only audit record."""

    ts: datetime
    event: str
    detail: str = ""
    task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ts": to_iso(self.ts), "event": self.event}
        if self.task_id is not None:
            payload["task_id"] = self.task_id
        payload["detail"] = self.detail
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        ts = from_iso(payload.get("ts"))
        if ts is None:
            raise ValueError(f"History entry without timestamp: {payload!r}")
        task_id = payload.get("task_id")
        return cls(
            ts=ts,
            event=str(payload.get("event", "")),
            detail=str(payload.get("detail", "")),
            task_id=str(task_id) if task_id is not None else None,
        )


@dataclass(slots=True)
class Heartbeat:
    """Last-command marker for external recovery tooling."""

    last_command: str
    timestamp: datetime
    active_task_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_command": self.last_command,
            "timestamp": to_iso(self.timestamp),
            "active_task_ids": list(self.active_task_ids),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Heartbeat:
        timestamp = from_iso(payload.get("timestamp"))
        if timestamp is None:
            raise ValueError(f"Heartbeat without timestamp: {payload!r}")
        return cls(
            last_command=str(payload.get("last_command", "")),
            timestamp=timestamp,
            active_task_ids=[str(item) for item in payload.get("active_task_ids", [])],
        )


@dataclass(slots=True)
class VerifyResult:
    """Outcome reported by the verification collaborator."""

    passed: bool
    scripts: list[str] = field(default_factory=list)
    error: str | None = None
