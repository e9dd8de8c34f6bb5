"""Commit and verification collaborators consumed by the workflow service."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskrelay.config import WorkflowConfig
from taskrelay.engine.models import VerifyResult

logger = logging.getLogger(__name__)

STASH_MARKER = "taskrelay-resume:"
VERIFY_OUTPUT_MAX_CHARS = 500
_EMPTY_TEST_SUITE_MARKERS: tuple[str, ...] = ("no test files",)


class Committer(Protocol):
    """Protocol implemented by version-control adapters."""

    def commit(
        self,
        task_id: str,
        title: str,
        summary: str,
        files: Sequence[str] | None = None,
    ) -> str | None:
        """Commit task changes; return an error message or ``None``."""

    def cleanup(self) -> None:
        """Preserve uncommitted changes left by an interrupted attempt."""

    def prune_old(self, max_keep: int) -> None:
        """Drop preserved-change entries beyond ``max_keep``."""


class Verifier(Protocol):
    """Protocol implemented by verification runners."""

    def verify(self, config: WorkflowConfig) -> VerifyResult:
        """Run the configured checks."""


class NullCommitter:
    """Committer used when version control is disabled."""

    def commit(
        self,
        task_id: str,
        title: str,
        summary: str,
        files: Sequence[str] | None = None,
    ) -> str | None:
        return None

    def cleanup(self) -> None:
        return None

    def prune_old(self, max_keep: int) -> None:
        return None


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitCommitter:
    """Stage and commit through the ``git`` executable, submodule-aware."""

    def __init__(self, cwd: Path, *, executable: str = "git") -> None:
        self.cwd = cwd
        self.executable = executable

    def commit(
        self,
        task_id: str,
        title: str,
        summary: str,
        files: Sequence[str] | None = None,
    ) -> str | None:
        if not self._is_repository():
            logger.debug("Skipping commit for task %s: %s is not a work tree", task_id, self.cwd)
            return None
        message = f"task-{task_id}: {title}\n\n{summary}".rstrip()
        submodules = self._submodules()
        errors: list[str] = []
        if not submodules:
            paths = list(files) if files else None
            _append_error(errors, self._commit_in(self.cwd, paths, message))
            return "\n".join(errors) or None

        if files:
            groups = _group_by_submodule(files, submodules)
            for submodule, sub_files in groups.items():
                if submodule:
                    _append_error(errors, self._commit_in(self.cwd / submodule, sub_files, message))
            parent_paths = [key for key in groups if key] + groups.get("", [])
            _append_error(errors, self._commit_in(self.cwd, parent_paths, message))
        else:
            for submodule in submodules:
                _append_error(errors, self._commit_in(self.cwd / submodule, None, message))
            _append_error(errors, self._commit_in(self.cwd, None, message))
        return "\n".join(errors) or None

    def cleanup(self) -> None:
        status = self._git("status", "--porcelain")
        if not status.ok:
            logger.warning("git status failed during cleanup: %s", status.stderr.strip())
            return
        if not status.stdout.strip():
            return
        stash = self._git(
            "stash",
            "push",
            "--include-untracked",
            "-m",
            f"{STASH_MARKER} auto-stashed on interrupt recovery",
        )
        if not stash.ok:
            logger.warning("git stash failed during cleanup: %s", stash.stderr.strip())
        else:
            logger.info("Stashed uncommitted changes left by an interrupted task")

    def prune_old(self, max_keep: int) -> None:
        listing = self._git("stash", "list")
        if not listing.ok:
            logger.warning("git stash list failed: %s", listing.stderr.strip())
            return
        ours = [
            index
            for index, line in enumerate(listing.stdout.splitlines())
            if STASH_MARKER in line
        ]
        # Drop from the highest index down so earlier indexes stay valid.
        for index in reversed(ours[max(0, max_keep) :]):
            dropped = self._git("stash", "drop", f"stash@{{{index}}}")
            if not dropped.ok:
                logger.warning("git stash drop %d failed: %s", index, dropped.stderr.strip())

    def _is_repository(self) -> bool:
        return self._git("rev-parse", "--is-inside-work-tree").ok

    def _submodules(self) -> list[str]:
        result = self._git("submodule", "--quiet", "foreach", "echo $sm_path")
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _commit_in(self, cwd: Path, files: list[str] | None, message: str) -> str | None:
        added = (
            self._git("add", "--", *files, cwd=cwd) if files else self._git("add", "-A", cwd=cwd)
        )
        if not added.ok:
            return f"git add failed in {cwd}: {added.stderr.strip()}"
        staged = self._git("diff", "--cached", "--quiet", cwd=cwd)
        if staged.ok:
            logger.debug("Nothing staged in %s, skipping commit", cwd)
            return None
        committed = self._git("commit", "-m", message, cwd=cwd)
        if not committed.ok:
            detail = committed.stderr.strip() or committed.stdout.strip()
            return f"git commit failed in {cwd}: {detail}"
        return None

    def _git(self, *args: str, cwd: Path | None = None) -> GitResult:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.executable, *args],
                cwd=cwd or self.cwd,
                check=False,
                capture_output=True,
                text=True,
            )
        except OSError as error:
            return GitResult(returncode=127, stdout="", stderr=str(error))
        return GitResult(
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


class CommandVerifier:
    """Run ``config.verify_commands`` in order through the shell."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd

    def verify(self, config: WorkflowConfig) -> VerifyResult:
        commands = list(config.verify_commands)
        if not commands:
            return VerifyResult(passed=True, scripts=[])

        for command in commands:
            logger.info("Verifying: %s", command)
            try:
                completed = subprocess.run(  # noqa: S602
                    command,
                    shell=True,
                    cwd=self.cwd,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=config.verify_timeout_seconds,
                )
            except subprocess.TimeoutExpired:
                return VerifyResult(
                    passed=False,
                    scripts=commands,
                    error=f"{command} timed out after {config.verify_timeout_seconds}s",
                )
            except OSError as error:
                return VerifyResult(
                    passed=False,
                    scripts=commands,
                    error=f"{command} failed to start: {error}",
                )
            if completed.returncode == 0:
                continue
            output = completed.stderr or completed.stdout or ""
            if any(marker in output.lower() for marker in _EMPTY_TEST_SUITE_MARKERS):
                logger.info("Treating empty test suite as a pass: %s", command)
                continue
            logger.warning("Verification command failed: %s", command)
            return VerifyResult(
                passed=False,
                scripts=commands,
                error=f"{command} failed:\n{output[:VERIFY_OUTPUT_MAX_CHARS]}",
            )
        return VerifyResult(passed=True, scripts=commands)


def _group_by_submodule(files: Sequence[str], submodules: Sequence[str]) -> dict[str, list[str]]:
    """Split paths per submodule (longest prefix wins); ``""`` is the parent repo."""

    ordered = sorted(submodules, key=len, reverse=True)
    groups: dict[str, list[str]] = {}
    for path in files:
        normalized = path.replace("\\", "/")
        owner = next((sub for sub in ordered if normalized.startswith(sub + "/")), "")
        relative = normalized[len(owner) + 1 :] if owner else normalized
        groups.setdefault(owner, []).append(relative)
    return groups


def _append_error(errors: list[str], error: str | None) -> None:
    if error:
        errors.append(error)
