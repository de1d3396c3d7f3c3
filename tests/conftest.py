# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the agor-unix test suite.

This module provides foundational fixtures used across all test modules:
- Temporary home-base directories and worktree targets
- Mock command executors (no process is ever spawned through them)
- A fake privileged helper that performs its work on tmp_path
- Services wired with the fakes above

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from agor_unix.core.config import UnixConfig
from agor_unix.core.errors import ExecutionError
from agor_unix.core.groups import GroupManager
from agor_unix.core.locks import KeyedLock
from agor_unix.core.models import OperationResult, OperationStatus
from agor_unix.core.privileged import NO_CHANGE_MARK, PERFORMED_MARK
from agor_unix.core.service import UnixIntegrationService
from agor_unix.core.symlinks import SymlinkManager, derive_path
from agor_unix.core.users import UserManager, get_user_worktrees_dir
from agor_unix.execution.executor import CommandExecutor, ExecutionResult


# =============================================================================
# File System Fixtures
# =============================================================================


@pytest.fixture
def home_base(tmp_path: Path) -> str:
    """A directory standing in for /home."""
    base = tmp_path / "home"
    base.mkdir()
    return str(base)


@pytest.fixture
def worktree_dirs(tmp_path: Path) -> dict[str, str]:
    """Two real worktree directories to point symlinks at."""
    root = tmp_path / "worktrees"
    targets = {}
    for name in ("feature-a", "feature-b"):
        path = root / name
        path.mkdir(parents=True)
        (path / "README.md").write_text(f"# {name}\n")
        targets[name] = str(path)
    return targets


@pytest.fixture
def user_worktrees_dir(home_base: str) -> str:
    """~alice/agor/worktrees, already created."""
    path = get_user_worktrees_dir("alice", home_base)
    os.makedirs(path)
    return path


# =============================================================================
# Executor Fixtures
# =============================================================================


def make_result(returncode: int = 0, stdout: str = "", stderr: str = "") -> ExecutionResult:
    return ExecutionResult(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mock_executor() -> Mock:
    """A CommandExecutor whose calls succeed with empty output.

    Example:
        def test_something(mock_executor):
            mock_executor.succeeds.return_value = False
            ...
            argv = mock_executor.execute.call_args[0][0].argv
    """
    executor = Mock(spec=CommandExecutor)
    executor.execute.return_value = make_result()
    executor.succeeds.return_value = True
    executor.elevated = False
    return executor


# =============================================================================
# Privileged Helper Fake
# =============================================================================


def status_output(result: OperationResult) -> ExecutionResult:
    """Helper-style stdout for ``result``, as the admin CLI prints it."""
    if result.status == OperationStatus.FAILED:
        # The real helper prints a red line and exits 1
        raise ExecutionError(1, result.message)
    mark = PERFORMED_MARK if result.changed else NO_CHANGE_MARK
    return make_result(stdout=f"{mark} {result.message}\n")


class FakeHelper:
    """Stands in for PrivilegedHelper, doing the work directly on tmp_path.

    Records every call and the peak number of calls in flight at once, so
    tests can check that workflows on one resource never overlap. Output
    carries the same status lines as the real helper.
    """

    def __init__(self, delay: float = 0.0):
        self.calls: list[tuple] = []
        self.delay = delay
        self.max_in_flight = 0
        self._in_flight = 0
        self._guard = threading.Lock()
        self._symlinks = SymlinkManager()

    @property
    def privileged(self) -> bool:
        """True while a call is running, i.e. while acting as root."""
        return self._in_flight > 0

    def _enter(self, call: tuple) -> None:
        with self._guard:
            self.calls.append(call)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        if self.delay:
            time.sleep(self.delay)

    def _exit(self) -> None:
        with self._guard:
            self._in_flight -= 1

    def ensure_user(self, username, home_base, shell):
        self._enter(("ensure-user", username, home_base, shell))
        try:
            worktrees_dir = get_user_worktrees_dir(username, home_base)
            if os.path.isdir(worktrees_dir):
                result = OperationResult.no_change(
                    "ensure-worktrees-root", f"Worktrees directory already present: {worktrees_dir}"
                )
            else:
                os.makedirs(worktrees_dir)
                result = OperationResult.performed(
                    "ensure-worktrees-root", f"Created worktrees directory: {worktrees_dir}"
                )
        finally:
            self._exit()
        return status_output(result)

    def delete_user(self, username, delete_home=False):
        self._enter(("delete-user", username, delete_home))
        self._exit()
        return status_output(OperationResult.performed("delete-user", f"Deleted Unix user {username}"))

    def create_symlink(self, username, worktree_name, worktree_path, home_base):
        self._enter(("create-symlink", username, worktree_name, worktree_path, home_base))
        try:
            link_path = derive_path(username, worktree_name, home_base)
            os.makedirs(os.path.dirname(link_path), exist_ok=True)
            result = self._symlinks.create_or_replace(worktree_path, link_path)
        finally:
            self._exit()
        return status_output(result)

    def remove_symlink(self, username, worktree_name, home_base):
        self._enter(("remove-symlink", username, worktree_name, home_base))
        try:
            result = self._symlinks.remove(derive_path(username, worktree_name, home_base))
        finally:
            self._exit()
        return status_output(result)

    def sync_user_symlinks(self, username, home_base):
        self._enter(("sync-user-symlinks", username, home_base))
        try:
            result = self._symlinks.prune_broken(get_user_worktrees_dir(username, home_base))
        finally:
            self._exit()
        return status_output(result)

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_helper() -> FakeHelper:
    return FakeHelper()


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def unix_config(home_base: str) -> UnixConfig:
    return UnixConfig(home_base=home_base)


@pytest.fixture
def mock_users() -> Mock:
    users = Mock(spec=UserManager)
    users.exists.return_value = True
    return users


@pytest.fixture
def mock_groups() -> Mock:
    return Mock(spec=GroupManager)


@pytest.fixture
def service(
    unix_config: UnixConfig,
    mock_executor: Mock,
    fake_helper: FakeHelper,
    mock_users: Mock,
    mock_groups: Mock,
) -> UnixIntegrationService:
    """Service with real symlink inspection and faked privileged calls."""
    return UnixIntegrationService(
        unix_config,
        executor=mock_executor,
        helper=fake_helper,
        users=mock_users,
        groups=mock_groups,
        symlinks=SymlinkManager(mock_executor),
        locks=KeyedLock(timeout=5.0),
    )


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "shell: marks tests that spawn a real /bin/sh")
    config.addinivalue_line("markers", "concurrency: marks multi-threaded tests")
