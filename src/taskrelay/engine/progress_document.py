"""Human-readable progress document codec.

The document is a Markdown table with one row per task, followed by a single
``<!-- meta: {...} -->`` line carrying what the rows cannot: start time,
active set, review gate, per-task fail history and timestamps, and the raw
text of any cell that had to be escaped.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any

from taskrelay.engine.models import (
    Task,
    TaskCategory,
    TaskStatus,
    TaskTimestamps,
    WorkflowState,
    WorkflowStatus,
)
from taskrelay.engine.timeutil import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

COLUMNS = ("ID", "Title", "Category", "Deps", "Status", "Retries", "Summary", "Description")
EMPTY_CELL = "-"
PIPE_SUBSTITUTE = "∣"

_HEADING_RE = re.compile(r"^#\s+(?P<name>.+?)\s*$")
_STATUS_RE = re.compile(r"^Status:\s*(?P<status>\S+)\s*$")
_META_RE = re.compile(r"^<!--\s*meta:\s*(?P<payload>.*?)\s*-->\s*$")
_TASK_ID_RE = re.compile(r"^\d+$")


def render_progress(state: WorkflowState) -> str:
    """Serialize ``state`` into the progress document."""

    lines = [
        f"# {_inline(state.name)}",
        "",
        f"Status: {state.status.value}",
        "",
        "| " + " | ".join(COLUMNS) + " |",
        "|" + "|".join("-" * (len(column) + 2) for column in COLUMNS) + "|",
    ]
    task_meta: dict[str, dict[str, Any]] = {}
    for task in state.tasks:
        cells = [
            task.id,
            _cell(task.title),
            task.category.value,
            ", ".join(task.deps) if task.deps else EMPTY_CELL,
            task.status.value,
            str(task.retries),
            _cell(task.summary),
            _cell(task.description),
        ]
        lines.append("| " + " | ".join(cells) + " |")
        task_meta[task.id] = _task_meta(task)

    meta = {
        "started_at": to_iso(state.started_at),
        "active_task_ids": list(state.active_task_ids),
        "review_done": state.review_done,
        "verified": state.verified,
        "tasks": task_meta,
    }
    # A literal "-->" inside a string value would close the comment early.
    payload = json.dumps(meta, ensure_ascii=False, sort_keys=True).replace("-->", "--\\u003e")
    lines.extend(["", f"<!-- meta: {payload} -->", ""])
    return "\n".join(lines)


def parse_progress(text: str) -> WorkflowState | None:
    """Parse a progress document; returns ``None`` when no heading is found.

    Unknown statuses and categories fall back to safe defaults, rows that do
    not look like task rows are dropped, and a damaged meta line is ignored.
    """

    name: str | None = None
    status = WorkflowStatus.IDLE
    rows: list[list[str]] = []
    meta: dict[str, Any] = {}

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if name is None:
            heading = _HEADING_RE.match(line)
            if heading:
                name = heading.group("name")
                continue
        status_match = _STATUS_RE.match(line)
        if status_match:
            status = _parse_workflow_status(status_match.group("status"))
            continue
        meta_match = _META_RE.match(line)
        if meta_match:
            meta = _parse_meta(meta_match.group("payload"))
            continue
        if line.startswith("|") and line.endswith("|"):
            cells = [cell.strip() for cell in line[1:-1].split("|")]
            if len(cells) == len(COLUMNS) and _TASK_ID_RE.match(cells[0]):
                rows.append(cells)
            elif cells[0] != "ID" and not set(cells[0]) <= {"-", ":"}:
                logger.debug("Dropping malformed progress row: %s", line)

    if name is None:
        return None

    started_at = from_iso(meta.get("started_at")) or utc_now()
    tasks_meta = meta.get("tasks") if isinstance(meta.get("tasks"), dict) else {}
    tasks = [_task_from_row(cells, tasks_meta.get(cells[0]), started_at) for cells in rows]
    known_ids = {task.id for task in tasks}
    active_ids = [
        str(item)
        for item in _as_list(meta.get("active_task_ids"))
        if str(item) in known_ids
    ]
    return WorkflowState(
        name=name,
        started_at=started_at,
        status=status,
        active_task_ids=active_ids,
        tasks=tasks,
        review_done=bool(meta.get("review_done", False)),
        verified=bool(meta.get("verified", False)),
    )


def _task_meta(task: Task) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "fail_history": list(task.fail_history),
        "timestamps": task.timestamps.to_dict(),
    }
    raw = {
        field_name: value
        for field_name, value in (
            ("title", task.title),
            ("summary", task.summary),
            ("description", task.description),
        )
        if value and (_cell(value) != value or value == EMPTY_CELL)
    }
    if raw:
        payload["raw"] = raw
    return payload


def _task_from_row(
    cells: list[str],
    meta: object,
    default_created: datetime,
) -> Task:
    task_id, title, category, deps, status, retries, summary, description = cells
    task_meta: dict[str, Any] = meta if isinstance(meta, dict) else {}
    raw = task_meta.get("raw") if isinstance(task_meta.get("raw"), dict) else {}
    timestamps_payload = task_meta.get("timestamps")
    timestamps = TaskTimestamps.from_dict(
        timestamps_payload if isinstance(timestamps_payload, dict) else {},
        default_created=default_created,
    )
    return Task(
        id=task_id,
        title=str(raw.get("title", _uncell(title))),
        timestamps=timestamps,
        description=str(raw.get("description", _uncell(description))),
        category=TaskCategory.parse(category),
        status=_parse_task_status(status),
        deps=_parse_deps(deps),
        summary=str(raw.get("summary", _uncell(summary))),
        retries=_parse_retries(retries),
        fail_history=[str(item) for item in _as_list(task_meta.get("fail_history"))],
    )


def _cell(value: str) -> str:
    if not value:
        return EMPTY_CELL
    return _inline(value).replace("|", PIPE_SUBSTITUTE)


def _uncell(value: str) -> str:
    return "" if value == EMPTY_CELL else value


def _inline(value: str) -> str:
    return " ".join(value.splitlines()).strip()


def _parse_deps(value: str) -> list[str]:
    if value == EMPTY_CELL:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_retries(value: str) -> int:
    try:
        return max(0, int(value))
    except ValueError:
        return 0


def _parse_task_status(value: str) -> TaskStatus:
    try:
        return TaskStatus(value.strip().lower())
    except ValueError:
        logger.warning("Unknown task status %r, treating as pending", value)
        return TaskStatus.PENDING


def _parse_workflow_status(value: str) -> WorkflowStatus:
    try:
        return WorkflowStatus(value.strip().lower())
    except ValueError:
        logger.warning("Unknown workflow status %r, treating as idle", value)
        return WorkflowStatus.IDLE


def _parse_meta(payload: str) -> dict[str, Any]:
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed progress meta annotation")
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _as_list(value: object) -> list[object]:
    return list(value) if isinstance(value, list) else []
