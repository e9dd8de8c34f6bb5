"""Rolling project summary handed to dependent tasks as context."""

from __future__ import annotations

from collections.abc import Sequence

from taskrelay.engine.models import Task, TaskStatus


def build_rolling_summary(name: str, tasks: Sequence[Task], threshold: int) -> str:
    """Rebuild the summary from scratch over ``done`` tasks.

    Up to ``threshold`` completions are listed one per line. Past it the
    listing is grouped by category (first-seen order) so the context stays
    scannable as the workflow grows.
    """

    done = [task for task in tasks if task.status == TaskStatus.DONE]
    lines = [f"# {name}", ""]
    if len(done) <= threshold:
        lines.extend(
            f"- [{task.category.value}] {task.id}: {task.title}: {task.summary}" for task in done
        )
        return "\n".join(lines).rstrip() + "\n"

    groups: dict[str, list[Task]] = {}
    for task in done:
        groups.setdefault(task.category.value, []).append(task)
    for category, members in groups.items():
        lines.append(f"## {category} ({len(members)} done)")
        lines.extend(f"- {task.id}: {task.title} -> {task.summary}" for task in members)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
