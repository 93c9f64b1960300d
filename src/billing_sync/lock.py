"""File lock preventing overlapping batch runs."""

import os
import secrets
import time
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class LockHeldError(RuntimeError):
    """Another run holds a fresh lock."""

    def __init__(self, path: Path, age_seconds: float):
        super().__init__(f"lock {path} held for {age_seconds:.0f}s")
        self.path = path
        self.age_seconds = age_seconds


class RunLock:
    """Exclusive lock file holding the owner's pid, start time and a run token.

    A lock older than ``ttl_seconds`` belonged to a run that died and is
    replaced. Breaking a stale lock renames it aside first, so of two runs
    racing for the same stale file only the one that renamed it proceeds;
    the token read back from the renamed file confirms it was the stale one.
    Release only removes a file still holding this run's token.

    Usage:
        with RunLock("billing_sync.lock", ttl_seconds=3600):
            ...
    """

    def __init__(self, path: str | Path, ttl_seconds: float = 3600.0):
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self.token = f"{os.getpid()} {time.time():.0f} {secrets.token_hex(4)}"
        self._held = False

    def _age(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _read(self, path: Path | None = None) -> str | None:
        try:
            return (path or self.path).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    def _create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{self.token}\n")
        return True

    def _break_stale(self, seen: str | None) -> bool:
        """Move aside the lock file if it still holds ``seen``. Returns True when removed."""
        aside = self.path.with_name(f"{self.path.name}.{secrets.token_hex(4)}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True
        if self._read(aside) != seen:
            # Another run replaced the stale lock in between; put its lock back
            try:
                os.link(aside, self.path)
            except FileExistsError:
                pass
            aside.unlink(missing_ok=True)
            return False
        aside.unlink(missing_ok=True)
        return True

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockHeldError: If a fresh lock is held by another run.
        """
        if self._create():
            self._held = True
            logger.debug("lock_acquired", path=str(self.path))
            return

        seen = self._read()
        age = self._age()
        if age is not None and age <= self.ttl_seconds:
            raise LockHeldError(self.path, age)

        logger.warning("stale_lock_replaced", path=str(self.path), age_seconds=age, owner=seen)
        if not self._break_stale(seen) or not self._create():
            raise LockHeldError(self.path, self._age() or 0.0)
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        current = self._read()
        if current != self.token:
            logger.warning("lock_taken_over", path=str(self.path), owner=current)
            return
        self.path.unlink(missing_ok=True)
        logger.debug("lock_released", path=str(self.path))

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()
