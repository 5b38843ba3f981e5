"""
Advisory File Locking
=====================

Cross-process mutual exclusion for files shared by several hyle processes
working in the same directory.

Locks are ``fcntl.flock`` locks on dedicated ``*.lock`` files. flock locks
belong to the open file description, so two ``AdvisoryLock`` objects on the
same path exclude each other even inside one process, and the kernel drops
the lock when a holder dies. Acquisition polls with ``LOCK_NB`` until a
deadline and then raises ``LockContention``.

Also provides ``atomic_write_json``: the only way shared JSON records are
rewritten (temp file in the same directory, fsync, ``os.replace``).
"""

import fcntl
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

from hyle.errors import LockContention, StoreIoError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0
POLL_INTERVAL = 0.01


class AdvisoryLock:
    """
    An exclusive flock on ``path``.

    Usage:
        with AdvisoryLock(session_dir / "messages.lock", timeout=5):
            ...  # exclusive section
    """

    def __init__(self, path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = Path(path)
        self.timeout = timeout
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _open(self) -> int:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise StoreIoError(f"Cannot open lock file {self.path}: {e}") from e

    def try_acquire(self) -> bool:
        """Take the lock without waiting. Returns False if another holder has it."""
        if self._fd is not None:
            return True
        fd = self._open()
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        return True

    def acquire(self, timeout: Optional[float] = None) -> "AdvisoryLock":
        """Wait up to ``timeout`` seconds for the lock."""
        wait = self.timeout if timeout is None else timeout
        start = time.monotonic()
        while not self.try_acquire():
            elapsed = time.monotonic() - start
            if elapsed >= wait:
                raise LockContention(str(self.path), elapsed)
            time.sleep(POLL_INTERVAL)
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def write_owner(self, info: dict) -> None:
        """Record who holds the lock, for diagnostics only."""
        if self._fd is None:
            return
        data = json.dumps(info).encode("utf-8")
        os.ftruncate(self._fd, 0)
        os.pwrite(self._fd, data, 0)

    def __enter__(self) -> "AdvisoryLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __del__(self):
        # Closing the descriptor is what frees a flock.
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None


def is_locked(path: Path) -> bool:
    """Non-blocking check: True when some other descriptor holds ``path``."""
    if not Path(path).exists():
        return False
    candidate = AdvisoryLock(path)
    if candidate.try_acquire():
        candidate.release()
        return False
    return True


def read_lock_owner(path: Path) -> Optional[dict]:
    """Return the owner record written by ``write_owner``, if readable."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        return None
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def atomic_write_json(path: Path, data: Any) -> None:
    """Replace ``path`` with ``data`` so readers see the old or the new file, never a mix."""
    path = Path(path)
    payload = json.dumps(data, indent=2, default=str)
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    except OSError as e:
        raise StoreIoError(f"Cannot create temp file for {path}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise StoreIoError(f"Cannot write {path}: {e}") from e


def read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise
    except (OSError, json.JSONDecodeError) as e:
        raise StoreIoError(f"Cannot read {path}: {e}") from e
