from __future__ import annotations

import allure
import pytest

from taskrelay.engine.models import TaskCategory, TaskStatus
from taskrelay.engine.summary import build_rolling_summary

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Summary Compaction"),
]


@pytest.fixture()
def make_done(make_task):
    def _make_done(task_id: str, category: TaskCategory, summary: str):
        return make_task(
            task_id,
            status=TaskStatus.DONE,
            category=category,
            title=f"Title {task_id}",
            summary=summary,
        )

    return _make_done


def test_summary_lists_done_tasks_below_threshold(make_done, make_task) -> None:
    tasks = [
        make_done("001", TaskCategory.BACKEND, "model added"),
        make_task("002"),
        make_done("003", TaskCategory.FRONTEND, "form added"),
    ]

    text = build_rolling_summary("Signup", tasks, threshold=5)

    assert text == (
        "# Signup\n"
        "\n"
        "- [backend] 001: Title 001: model added\n"
        "- [frontend] 003: Title 003: form added\n"
    )


def test_summary_groups_by_category_above_threshold(make_done, make_task) -> None:
    tasks = [
        make_done("001", TaskCategory.BACKEND, "a"),
        make_done("002", TaskCategory.FRONTEND, "b"),
        make_done("003", TaskCategory.BACKEND, "c"),
        make_task("004", status=TaskStatus.SKIPPED),
    ]

    text = build_rolling_summary("Signup", tasks, threshold=2)

    assert text == (
        "# Signup\n"
        "\n"
        "## backend (2 done)\n"
        "- 001: Title 001 -> a\n"
        "- 003: Title 003 -> c\n"
        "\n"
        "## frontend (1 done)\n"
        "- 002: Title 002 -> b\n"
    )


def test_summary_with_nothing_done_is_just_the_heading(make_task) -> None:
    assert build_rolling_summary("Empty", [make_task("001")], threshold=10) == "# Empty\n"
