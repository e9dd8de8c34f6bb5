from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from taskrelay.engine.models import TaskCategory, TaskStatus, WorkflowState, WorkflowStatus
from taskrelay.engine.progress_document import parse_progress, render_progress

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Persistent Store"),
]


@pytest.fixture()
def sample_state(make_task, t0) -> WorkflowState:
    done = make_task("001", status=TaskStatus.DONE, category=TaskCategory.BACKEND, summary="ok")
    done.timestamps.completed = t0 + timedelta(minutes=5)
    active = make_task("002", deps=["001"], status=TaskStatus.ACTIVE, title="Form | page")
    active.description = "line one\nline two"
    active.retries = 2
    active.fail_history = ["[attempt 1] timeout", "[attempt 2] --> broken"]
    active.timestamps.started = t0 + timedelta(minutes=6)
    active.timestamps.last_failed = t0 + timedelta(minutes=3)
    failed = make_task("003", deps=["001", "002"], status=TaskStatus.FAILED, summary="-")
    return WorkflowState(
        name="Signup",
        started_at=t0,
        status=WorkflowStatus.RUNNING,
        active_task_ids=["002"],
        tasks=[done, active, failed],
        review_done=True,
        verified=True,
    )


def test_render_produces_readable_table(sample_state) -> None:
    text = render_progress(sample_state)

    assert text.startswith("# Signup\n\nStatus: running\n")
    assert "| ID | Title | Category | Deps | Status | Retries | Summary | Description |" in text
    assert "| 001 | Task 001 | backend | - | done | 0 | ok | - |" in text
    assert "| 002 | Form ∣ page | general | 001 | active | 2 | - | line one line two |" in text
    assert "<!-- meta: " in text


def test_round_trip_preserves_state(sample_state) -> None:
    parsed = parse_progress(render_progress(sample_state))

    assert parsed == sample_state


def test_parse_tolerates_bad_values() -> None:
    text = "\n".join(
        [
            "# Broken",
            "",
            "Status: aborted",
            "",
            "| ID | Title | Category | Deps | Status | Retries | Summary | Description |",
            "|----|-------|----------|------|--------|---------|---------|-------------|",
            "| 001 | First | mobile | - | exploded | many | - | - |",
            "| not a row |",
            "| abc | Bad id | general | - | done | 0 | - | - |",
            "| 002 | Second | frontend | 001 | done | 1 | fine | - |",
            "",
            "<!-- meta: {not json -->",
        ],
    )

    state = parse_progress(text)

    assert state is not None
    assert state.name == "Broken"
    assert state.status == WorkflowStatus.IDLE
    assert [task.id for task in state.tasks] == ["001", "002"]
    first, second = state.tasks
    assert first.status == TaskStatus.PENDING
    assert first.category == TaskCategory.GENERAL
    assert first.retries == 0
    assert second.deps == ["001"]
    assert second.summary == "fine"
    assert state.active_task_ids == []


def test_parse_without_heading_returns_none() -> None:
    assert parse_progress("") is None
    assert parse_progress("Status: running\n") is None


def test_meta_active_ids_must_reference_known_tasks(sample_state) -> None:
    state = sample_state
    text = render_progress(state).replace(
        '"active_task_ids": ["002"]',
        '"active_task_ids": ["002", "777"]',
    )

    assert parse_progress(text).active_task_ids == ["002"]
