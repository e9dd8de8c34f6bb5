"""Filesystem-backed workflow repository.

Layout under ``<root>/.taskrelay/``::

    progress.md            progress document (state aggregate)
    tasks.md               raw definition as supplied to ``init``
    config.json            WorkflowConfig
    history.jsonl          append-only audit log
    heartbeat.json         last command marker
    context/summary.md     rolling summary
    context/task-<id>.md   produced output per task
    .lock                  FileLock
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from taskrelay.config import DEFAULT_STATE_DIR, WorkflowConfig
from taskrelay.engine.errors import InvalidConfigError
from taskrelay.engine.locking import DEFAULT_POLL_INTERVAL_SECONDS, FileLock, pid_is_alive
from taskrelay.engine.models import Heartbeat, HistoryEntry, WorkflowState
from taskrelay.engine.progress_document import parse_progress, render_progress

logger = logging.getLogger(__name__)

PROGRESS_FILE = "progress.md"
DEFINITION_FILE = "tasks.md"
CONFIG_FILE = "config.json"
HISTORY_FILE = "history.jsonl"
HEARTBEAT_FILE = "heartbeat.json"
CONTEXT_DIR = "context"
SUMMARY_FILE = "summary.md"
LOCK_FILE = ".lock"


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file and rename it over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{time.time_ns()}.tmp")
    try:
        tmp_path.write_text(text, "utf-8")
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_json(path: Path, payload: dict[str, object]) -> None:
    """Persist JSON payload using deterministic formatting."""

    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text("utf-8")
    except FileNotFoundError:
        return None


class FileWorkflowRepository:
    """Workflow persistence facade backed by plain files."""

    def __init__(
        self,
        project_root: Path,
        *,
        state_dir_name: str = DEFAULT_STATE_DIR,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        is_alive: Callable[[int], bool] = pid_is_alive,
    ) -> None:
        self._project_root = project_root
        self.state_dir = project_root / state_dir_name
        self.context_dir = self.state_dir / CONTEXT_DIR
        self.poll_interval_seconds = poll_interval_seconds
        self.is_alive = is_alive

    @property
    def project_root(self) -> Path:
        return self._project_root

    def load_state(self) -> WorkflowState | None:
        text = _read_text(self.state_dir / PROGRESS_FILE)
        if text is None:
            return None
        state = parse_progress(text)
        if state is None:
            logger.warning("Progress document %s has no workflow heading", PROGRESS_FILE)
        return state

    def save_state(self, state: WorkflowState) -> None:
        atomic_write_text(self.state_dir / PROGRESS_FILE, render_progress(state))
        logger.debug("Saved workflow %r (%s)", state.name, state.status.value)

    def save_task_output(self, task_id: str, content: str) -> None:
        atomic_write_text(self._task_output_path(task_id), content)

    def load_task_output(self, task_id: str) -> str | None:
        return _read_text(self._task_output_path(task_id))

    def save_summary(self, text: str) -> None:
        atomic_write_text(self.context_dir / SUMMARY_FILE, text)

    def load_summary(self) -> str:
        return _read_text(self.context_dir / SUMMARY_FILE) or ""

    def save_definition(self, raw: str) -> None:
        atomic_write_text(self.state_dir / DEFINITION_FILE, raw)

    def load_definition(self) -> str | None:
        return _read_text(self.state_dir / DEFINITION_FILE)

    def load_config(self) -> WorkflowConfig:
        text = _read_text(self.state_dir / CONFIG_FILE)
        if text is None:
            return WorkflowConfig()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as error:
            raise InvalidConfigError(f"{CONFIG_FILE} is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise InvalidConfigError(f"{CONFIG_FILE} must contain a JSON object")
        try:
            return WorkflowConfig.from_dict(payload)
        except (TypeError, ValueError) as error:
            raise InvalidConfigError(f"{CONFIG_FILE} has unusable values: {error}") from error

    def save_config(self, config: WorkflowConfig) -> None:
        write_json(self.state_dir / CONFIG_FILE, config.to_dict())

    def has_config(self) -> bool:
        return (self.state_dir / CONFIG_FILE).exists()

    def append_history(self, entry: HistoryEntry) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
        with (self.state_dir / HISTORY_FILE).open("a", encoding="utf-8") as handle:
            handle.write(line)

    def load_history(self) -> list[HistoryEntry]:
        text = _read_text(self.state_dir / HISTORY_FILE)
        if text is None:
            return []
        entries: list[HistoryEntry] = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(HistoryEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError, AttributeError):
                # A torn trailing append from a killed process; the rest stays readable.
                logger.warning("Skipping unreadable history line %d", line_number)
        return entries

    def save_heartbeat(self, heartbeat: Heartbeat) -> None:
        write_json(self.state_dir / HEARTBEAT_FILE, heartbeat.to_dict())

    def load_heartbeat(self) -> Heartbeat | None:
        text = _read_text(self.state_dir / HEARTBEAT_FILE)
        if text is None:
            return None
        try:
            return Heartbeat.from_dict(json.loads(text))
        except (json.JSONDecodeError, ValueError, AttributeError, TypeError):
            # Advisory only; a damaged heartbeat must not block status or dispatch.
            logger.warning("Ignoring unreadable %s", HEARTBEAT_FILE)
            return None

    def clear_all(self) -> None:
        """Delete workflow state; config and the held lock file survive."""

        for name in (PROGRESS_FILE, DEFINITION_FILE, HISTORY_FILE, HEARTBEAT_FILE):
            (self.state_dir / name).unlink(missing_ok=True)
        if self.context_dir.exists():
            shutil.rmtree(self.context_dir)
        logger.info("Cleared workflow state under %s", self.state_dir)

    def lock(self, *, timeout_seconds: float, stale_after_seconds: float) -> FileLock:
        return FileLock(
            self.state_dir / LOCK_FILE,
            timeout_seconds=timeout_seconds,
            stale_after_seconds=stale_after_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            is_alive=self.is_alive,
        )

    def _task_output_path(self, task_id: str) -> Path:
        return self.context_dir / f"task-{task_id}.md"
