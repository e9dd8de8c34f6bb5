"""Repository interface the workflow service depends on.

The service only ever talks to :class:`WorkflowRepository`; the filesystem
implementation lives in :mod:`taskrelay.engine.fs_repository` and the
in-memory one below backs service-level tests.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Protocol

from taskrelay.config import WorkflowConfig
from taskrelay.engine.errors import LockTimeoutError
from taskrelay.engine.models import Heartbeat, HistoryEntry, WorkflowState


class WorkflowRepository(Protocol):
    """Load/save/lock surface over the persisted workflow."""

    @property
    def project_root(self) -> Path: ...

    def load_state(self) -> WorkflowState | None: ...

    def save_state(self, state: WorkflowState) -> None: ...

    def save_task_output(self, task_id: str, content: str) -> None: ...

    def load_task_output(self, task_id: str) -> str | None: ...

    def save_summary(self, text: str) -> None: ...

    def load_summary(self) -> str: ...

    def save_definition(self, raw: str) -> None: ...

    def load_definition(self) -> str | None: ...

    def load_config(self) -> WorkflowConfig: ...

    def save_config(self, config: WorkflowConfig) -> None: ...

    def has_config(self) -> bool: ...

    def append_history(self, entry: HistoryEntry) -> None: ...

    def load_history(self) -> list[HistoryEntry]: ...

    def save_heartbeat(self, heartbeat: Heartbeat) -> None: ...

    def load_heartbeat(self) -> Heartbeat | None: ...

    def clear_all(self) -> None: ...

    def lock(
        self,
        *,
        timeout_seconds: float,
        stale_after_seconds: float,
    ) -> AbstractContextManager[object]: ...


class InMemoryWorkflowRepository:
    """Dict-backed repository with copy-on-save semantics.

    Saved objects are deep-copied so callers cannot mutate persisted state
    without another ``save_*`` call, the same as with the filesystem store.
    """

    def __init__(self, project_root: Path | None = None) -> None:
        self._project_root = project_root or Path(".")
        self._state: WorkflowState | None = None
        self._outputs: dict[str, str] = {}
        self._summary = ""
        self._definition: str | None = None
        self._config: WorkflowConfig | None = None
        self._history: list[HistoryEntry] = []
        self._heartbeat: Heartbeat | None = None
        self.locked = False
        self.lock_count = 0

    @property
    def project_root(self) -> Path:
        return self._project_root

    def load_state(self) -> WorkflowState | None:
        return copy.deepcopy(self._state)

    def save_state(self, state: WorkflowState) -> None:
        self._state = copy.deepcopy(state)

    def save_task_output(self, task_id: str, content: str) -> None:
        self._outputs[task_id] = content

    def load_task_output(self, task_id: str) -> str | None:
        return self._outputs.get(task_id)

    def save_summary(self, text: str) -> None:
        self._summary = text

    def load_summary(self) -> str:
        return self._summary

    def save_definition(self, raw: str) -> None:
        self._definition = raw

    def load_definition(self) -> str | None:
        return self._definition

    def load_config(self) -> WorkflowConfig:
        return copy.deepcopy(self._config) if self._config is not None else WorkflowConfig()

    def save_config(self, config: WorkflowConfig) -> None:
        self._config = copy.deepcopy(config)

    def has_config(self) -> bool:
        return self._config is not None

    def append_history(self, entry: HistoryEntry) -> None:
        self._history.append(entry)

    def load_history(self) -> list[HistoryEntry]:
        return list(self._history)

    def save_heartbeat(self, heartbeat: Heartbeat) -> None:
        self._heartbeat = copy.deepcopy(heartbeat)

    def load_heartbeat(self) -> Heartbeat | None:
        return copy.deepcopy(self._heartbeat)

    def clear_all(self) -> None:
        self._state = None
        self._outputs.clear()
        self._summary = ""
        self._definition = None
        self._history.clear()
        self._heartbeat = None

    @contextmanager
    def lock(
        self,
        *,
        timeout_seconds: float,
        stale_after_seconds: float,
    ) -> Iterator[InMemoryWorkflowRepository]:
        if self.locked:
            raise LockTimeoutError("In-memory repository lock is already held")
        self.locked = True
        self.lock_count += 1
        try:
            yield self
        finally:
            self.locked = False
