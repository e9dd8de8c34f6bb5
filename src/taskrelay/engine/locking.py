"""Cross-process mutual exclusion over the shared state directory.

The lock is a file created with ``O_CREAT | O_EXCL`` holding the owner pid
and acquisition time in epoch milliseconds::

    12345
    1760000000000

A contender breaks the lock when the holder process is gone, or when the
lock is older than ``stale_after_seconds`` even though the pid still answers
(the holder was killed without cleanup and the pid has not been recycled
yet). Breaking renames the file aside first, so two contenders that judge
the same holder abandoned cannot both remove a lock. Otherwise a contender
polls until ``timeout_seconds`` and then fails loudly.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from taskrelay.engine.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05


def pid_is_alive(pid: int) -> bool:
    """Signal-0 liveness check; a pid we may not signal still exists."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(slots=True)
class LockHolder:
    """Parsed lock file contents."""

    pid: int | None
    acquired_at: float | None


class FileLock:
    """Exclusive-create lock file with liveness and staleness recovery."""

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        timeout_seconds: float = 30.0,
        stale_after_seconds: float = 60.0,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        is_alive: Callable[[int], bool] = pid_is_alive,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        pid: int | None = None,
    ) -> None:
        self.path = path
        self.timeout_seconds = timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.is_alive = is_alive
        self.clock = clock
        self.sleep = sleep
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = self.clock() + self.timeout_seconds
        while True:
            if self._try_create():
                self._held = True
                return
            if self._break_if_abandoned():
                continue
            if self.clock() >= deadline:
                raise LockTimeoutError(
                    f"Could not acquire {self.path} within {self.timeout_seconds:g}s; "
                    "another taskrelay process may be running. "
                    "If not, remove the lock file or run `taskrelay resume`.",
                )
            self.sleep(self.poll_interval_seconds)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except OSError:
            logger.debug("Lock file %s already gone on release", self.path, exc_info=True)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()

    def read_holder(self) -> LockHolder | None:
        """Return the current holder, or ``None`` when no lock file exists."""

        observed = self._observe(self.path)
        return observed[0] if observed is not None else None

    def _observe(self, path: Path) -> tuple[LockHolder, tuple[int, str]] | None:
        """Parse ``path`` and return its holder plus an identity (inode, contents)."""

        try:
            stat = path.stat()
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        lines = raw.splitlines()
        pid = _parse_int(lines[0]) if lines else None
        acquired_ms = _parse_int(lines[1]) if len(lines) > 1 else None
        if acquired_ms is not None:
            acquired_at = acquired_ms / 1000.0
        else:
            # Holder crashed between create and write; fall back to file age.
            acquired_at = stat.st_mtime
        return LockHolder(pid=pid, acquired_at=acquired_at), (stat.st_ino, raw)

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, f"{self.pid}\n{int(self.clock() * 1000)}\n".encode())
        finally:
            os.close(fd)
        return True

    def _break_if_abandoned(self) -> bool:
        observed = self._observe(self.path)
        if observed is None:
            # Released between our create attempt and the read.
            return True
        holder, identity = observed
        if holder.pid is not None and not self.is_alive(holder.pid):
            logger.warning("Removing lock %s held by dead process %s", self.path, holder.pid)
            self._claim_abandoned(identity)
            return True
        age = self.clock() - holder.acquired_at if holder.acquired_at is not None else 0.0
        if age > self.stale_after_seconds:
            logger.warning(
                "Removing stale lock %s held by pid %s for %.1fs",
                self.path,
                holder.pid,
                age,
            )
            self._claim_abandoned(identity)
            return True
        return False

    def _claim_abandoned(self, identity: tuple[int, str]) -> None:
        """Move the lock file aside and delete it only if it is the one judged abandoned.

        Between reading the holder and acting on it, another contender may have
        broken the same lock and created its own. Renaming is atomic, so exactly
        one contender ends up with the file; a file that turns out to belong to
        a newer holder is linked back into place.
        """

        aside = self.path.with_name(f"{self.path.name}.{self.pid}.{time.time_ns()}.broken")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return
        observed = self._observe(aside)
        if observed is None:
            return
        if observed[1] == identity:
            aside.unlink(missing_ok=True)
            return
        logger.info("Lock %s changed hands while being broken; putting it back", self.path)
        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.warning(
                "Could not restore lock %s held by pid %s; a newer lock replaced it",
                self.path,
                observed[0].pid,
            )
        finally:
            aside.unlink(missing_ok=True)


@contextmanager
def held(lock: FileLock) -> Iterator[FileLock]:
    """Hold ``lock`` for the duration of the block."""

    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


def _parse_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None
