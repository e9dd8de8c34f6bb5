"""Runtime configuration for the workflow engine and its CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".taskrelay"


@dataclass(slots=True)
class WorkflowConfig:
    """Per-workflow tunables persisted next to the progress document."""

    auto_commit: bool = True
    verify_commands: list[str] = field(default_factory=list)
    verify_timeout_seconds: int = 300
    summary_compact_threshold: int = 50
    max_parallel: int | None = None
    max_retries: int = 3
    lock_timeout_seconds: float = 30.0
    lock_stale_after_seconds: float = 60.0
    active_task_stale_after_seconds: int = 1_800
    stash_keep: int = 5

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowConfig:
        """Build config from a decoded JSON object; unknown keys are ignored.

        Values must already have the declared JSON types. ``"false"`` is not a
        boolean and ``"3"`` is not an integer; both raise ``ValueError``.
        """

        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            logger.debug("Ignoring unknown config keys: %s", ", ".join(unknown))
        values = {key: _check_field(key, value) for key, value in payload.items() if key in known}
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.verify_timeout_seconds <= 0:
            raise ValueError("verify_timeout_seconds must be > 0.")
        if self.summary_compact_threshold < 0:
            raise ValueError("summary_compact_threshold must be >= 0.")
        if self.max_parallel is not None and self.max_parallel <= 0:
            raise ValueError("max_parallel must be a positive integer or null.")
        if self.max_retries <= 0:
            raise ValueError("max_retries must be > 0.")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be > 0.")
        if self.lock_stale_after_seconds <= 0:
            raise ValueError("lock_stale_after_seconds must be > 0.")
        if self.active_task_stale_after_seconds <= 0:
            raise ValueError("active_task_stale_after_seconds must be > 0.")
        if self.stash_keep < 0:
            raise ValueError("stash_keep must be >= 0.")


@dataclass(slots=True)
class Settings:
    """Process-level settings resolved from the environment."""

    root: Path = field(default_factory=Path.cwd)
    state_dir_name: str = DEFAULT_STATE_DIR
    lock_poll_seconds: float = 0.05
    git_enabled: bool = True

    @property
    def state_dir(self) -> Path:
        return self.root / self.state_dir_name

    @classmethod
    def from_env(cls, root: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        env_root = os.getenv("TASKRELAY_ROOT", "").strip()
        return cls(
            root=root or (Path(env_root) if env_root else Path.cwd()),
            state_dir_name=os.getenv("TASKRELAY_STATE_DIR", DEFAULT_STATE_DIR).strip()
            or DEFAULT_STATE_DIR,
            lock_poll_seconds=float(os.getenv("TASKRELAY_LOCK_POLL_SECONDS", "0.05")),
            git_enabled=_env_bool("TASKRELAY_GIT_ENABLED", default=True),
        )

    def validate(self) -> None:
        if self.lock_poll_seconds <= 0:
            raise ValueError("TASKRELAY_LOCK_POLL_SECONDS must be > 0.")
        if Path(self.state_dir_name).is_absolute() or ".." in Path(self.state_dir_name).parts:
            raise ValueError(
                "TASKRELAY_STATE_DIR must be a relative directory name inside the project root.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


_BOOL_FIELDS = frozenset({"auto_commit"})
_FLOAT_FIELDS = frozenset({"lock_timeout_seconds", "lock_stale_after_seconds"})
_OPTIONAL_INT_FIELDS = frozenset({"max_parallel"})
_STRING_LIST_FIELDS = frozenset({"verify_commands"})


def _check_field(name: str, value: Any) -> Any:
    """Return ``value`` for config field ``name`` or raise ``ValueError`` on a wrong type."""

    if name in _BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        raise ValueError(f"{name} must be true or false, got {_json_type(value)}.")
    if name in _STRING_LIST_FIELDS:
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return list(value)
        raise ValueError(f"{name} must be a list of strings, got {_json_type(value)}.")
    if name in _FLOAT_FIELDS:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        raise ValueError(f"{name} must be a number, got {_json_type(value)}.")
    if value is None and name in _OPTIONAL_INT_FIELDS:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    suffix = " or null" if name in _OPTIONAL_INT_FIELDS else ""
    raise ValueError(f"{name} must be an integer{suffix}, got {_json_type(value)}.")


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return f"string {value!r}"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__
