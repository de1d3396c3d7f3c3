"""Per-resource-key mutual exclusion.

Operations on the same key (a symlink, a user, a group) are serialized for
their whole multi-step sequence. Disjoint keys never contend.

In-process exclusion uses one threading.Lock per key. When a lock
directory is configured, a filelock.FileLock per key adds cross-process
exclusion on top, so several service processes on one host agree.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import threading
from collections.abc import Generator
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Could not acquire a resource lock in time."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock '{key}'")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """Mutual exclusion keyed by resource identity.

    Usage::

        locks = KeyedLock()
        with locks.hold("symlink", "alice", "my-feature"):
            ...  # check-then-act sequence
    """

    LOCK_TIMEOUT: float = 60.0

    def __init__(self, lock_dir: Path | None = None, timeout: float | None = None):
        self.lock_dir = Path(lock_dir) if lock_dir else None
        self.timeout = timeout if timeout is not None else self.LOCK_TIMEOUT
        self._entries: dict[str, _Entry] = {}
        self._guard = threading.Lock()

    @staticmethod
    def make_key(*parts: str) -> str:
        return ":".join(parts)

    def is_held(self, *parts: str) -> bool:
        key = self.make_key(*parts)
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    @contextlib.contextmanager
    def hold(self, *parts: str) -> Generator[None, None, None]:
        key = self.make_key(*parts)
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=self.timeout):
                raise LockTimeoutError(key, self.timeout)
            try:
                with self._file_lock(key):
                    yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                self._entries.pop(key, None)

    @contextlib.contextmanager
    def _file_lock(self, key: str) -> Generator[None, None, None]:
        if self.lock_dir is None:
            yield
            return

        # SECURITY: a symlinked lock dir could redirect lock files anywhere
        if self.lock_dir.is_symlink():
            logger.warning(f"SECURITY: lock dir {self.lock_dir} is a symlink; cross-process lock disabled.")
            yield
            return

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        lock_path = self.lock_dir / f"{digest}.lock"

        file_lock = FileLock(str(lock_path), timeout=self.timeout)
        try:
            file_lock.acquire()
        except FileLockTimeout as e:
            raise LockTimeoutError(key, self.timeout) from e
        try:
            yield
        finally:
            file_lock.release()
