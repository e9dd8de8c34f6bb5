"""Markdown task-list parser and validator.

Accepted format::

    # Workflow name
    Optional one-line description
    1. [backend] Create user model
    2. [frontend] Signup form (deps: 1)
       Indented lines become the task description.

User numbering is free-form; tasks get sequential system ids in the order
they appear and ``deps`` are rewritten onto those ids.
"""

from __future__ import annotations

import re

from taskrelay.engine.graph import make_task_id
from taskrelay.engine.models import (
    DefinitionIssue,
    TaskCategory,
    TaskDefinition,
    WorkflowDefinition,
)

TASK_WITH_DEPS_RE = re.compile(
    r"^(\d+)\.\s+\[\s*([\w-]+)\s*\]\s+(.+)\s+\((?:deps?)\s*:\s*([^)]*)\)\s*$",
    re.IGNORECASE,
)
TASK_NO_DEPS_RE = re.compile(r"^(\d+)\.\s+\[\s*([\w-]+)\s*\]\s+(.+?)\s*$", re.IGNORECASE)
DESCRIPTION_RE = re.compile(r"^(?:\t|\s{2,})(.+)$")


def parse_definition(markdown: str) -> WorkflowDefinition:
    lines = markdown.splitlines()
    name = ""
    description = ""
    tasks: list[TaskDefinition] = []
    number_to_id: dict[str, str] = {}

    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1
        if not name and line.startswith("# "):
            name = line[2:].strip()
            continue
        match = TASK_WITH_DEPS_RE.match(line) or TASK_NO_DEPS_RE.match(line)
        if match is None:
            if name and not description and line.strip() and not line.startswith("#"):
                description = line.strip()
            continue

        user_number, category, title = match.group(1), match.group(2), match.group(3)
        raw_deps = match.group(4) if match.lastindex and match.lastindex >= 4 else ""
        system_id = make_task_id(len(tasks) + 1)
        number_to_id[user_number] = system_id
        number_to_id[user_number.zfill(3)] = system_id

        description_lines: list[str] = []
        while index < len(lines):
            continuation = DESCRIPTION_RE.match(lines[index])
            if continuation is None:
                break
            description_lines.append(continuation.group(1).strip())
            index += 1

        tasks.append(
            TaskDefinition(
                title=title.strip(),
                category=TaskCategory.parse(category),
                deps=[dep.strip() for dep in raw_deps.split(",") if dep.strip()],
                description="\n".join(description_lines),
            ),
        )

    for task in tasks:
        task.deps = [_map_dep(dep, number_to_id) for dep in task.deps]
    return WorkflowDefinition(name=name, description=description, tasks=tasks)


def _map_dep(dep: str, number_to_id: dict[str, str]) -> str:
    mapped = number_to_id.get(dep.zfill(3)) or number_to_id.get(dep)
    if mapped is not None:
        return mapped
    if dep.isdigit():
        return make_task_id(int(dep))
    return dep


def validate_definition(definition: WorkflowDefinition) -> list[DefinitionIssue]:
    """Return errors and warnings; any error means ``init`` must not proceed."""

    issues: list[DefinitionIssue] = []
    if not definition.name:
        issues.append(
            DefinitionIssue("error", "Missing workflow name (expected a '# Name' heading)"),
        )
    if not definition.tasks:
        issues.append(
            DefinitionIssue("error", "No tasks found; expected lines like '1. [backend] Title'"),
        )

    valid_ids = {make_task_id(position) for position in range(1, len(definition.tasks) + 1)}
    for position, task in enumerate(definition.tasks, start=1):
        task_id = make_task_id(position)
        for dep in task.deps:
            if dep == task_id:
                continue
            if dep not in valid_ids:
                issues.append(
                    DefinitionIssue(
                        "error",
                        f'Task {task_id} "{task.title}" depends on unknown task id: {dep}',
                    ),
                )
        if task_id in task.deps:
            issues.append(
                DefinitionIssue("error", f'Task {task_id} "{task.title}" cannot depend on itself'),
            )
        if len(set(task.deps)) < len(task.deps):
            issues.append(
                DefinitionIssue("warning", f'Task {task_id} "{task.title}" has duplicate deps'),
            )
    return issues
