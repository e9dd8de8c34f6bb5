"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

from taskrelay.config import WorkflowConfig
from taskrelay.engine.models import Task, TaskCategory, TaskStatus, TaskTimestamps, VerifyResult
from taskrelay.engine.repository import InMemoryWorkflowRepository
from taskrelay.engine.service import WorkflowService

_T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

_THREE_TASKS = """# Signup
User signup flow
1. [backend] Create user model
2. [backend] Signup endpoint (deps: 1)
3. [frontend] Signup form (deps: 1, 2)
   Form with email and password
"""


class FakeClock:
    """Deterministic clock advanced by tests."""

    def __init__(self, start: datetime = _T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class FakeCommitter:
    commits: list[tuple[str, str, str, list[str] | None]] = field(default_factory=list)
    cleanups: int = 0
    prunes: list[int] = field(default_factory=list)
    error: str | None = None

    def commit(
        self,
        task_id: str,
        title: str,
        summary: str,
        files: Sequence[str] | None = None,
    ) -> str | None:
        self.commits.append((task_id, title, summary, list(files) if files else None))
        return self.error

    def cleanup(self) -> None:
        self.cleanups += 1

    def prune_old(self, max_keep: int) -> None:
        self.prunes.append(max_keep)


@dataclass
class FakeVerifier:
    passed: bool = True
    scripts: list[str] = field(default_factory=lambda: ["make test"])
    error: str | None = None
    calls: int = 0
    on_verify: Callable[[], None] | None = None

    def verify(self, config: WorkflowConfig) -> VerifyResult:
        self.calls += 1
        if self.on_verify is not None:
            self.on_verify()
        return VerifyResult(
            passed=self.passed,
            scripts=list(self.scripts),
            error=None if self.passed else (self.error or "make test failed"),
        )


@pytest.fixture()
def t0() -> datetime:
    return _T0


@pytest.fixture()
def three_tasks() -> str:
    """Signup workflow: 002 depends on 001, 003 on both."""
    return _THREE_TASKS


@pytest.fixture()
def make_task() -> Callable[..., Task]:
    """Factory for tasks created at ``t0`` with sensible defaults."""

    def _make_task(  # noqa: PLR0913
        task_id: str,
        *,
        deps: Sequence[str] = (),
        status: TaskStatus = TaskStatus.PENDING,
        title: str | None = None,
        category: TaskCategory = TaskCategory.GENERAL,
        summary: str = "",
    ) -> Task:
        return Task(
            id=task_id,
            title=title or f"Task {task_id}",
            timestamps=TaskTimestamps(created=_T0),
            category=category,
            status=status,
            deps=list(deps),
            summary=summary,
        )

    return _make_task


@pytest.fixture()
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture()
def committer() -> FakeCommitter:
    return FakeCommitter()


@pytest.fixture()
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def service(
    repository: InMemoryWorkflowRepository,
    committer: FakeCommitter,
    verifier: FakeVerifier,
    clock: FakeClock,
) -> WorkflowService:
    return WorkflowService(
        repository=repository,
        committer=committer,
        verifier=verifier,
        clock=clock,
    )
