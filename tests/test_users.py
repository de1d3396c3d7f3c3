"""Tests for the user manager.

Commands are asserted at the argv level; nothing is spawned.
"""

from __future__ import annotations

import os

import pytest

from agor_unix.core.errors import CreateUserError, ExecutionError, UnsafePathError, ValidationError
from agor_unix.core.models import OperationStatus
from agor_unix.core.users import (
    UnixUserCommands,
    UserManager,
    get_user_home_dir,
    get_user_worktrees_dir,
)
from agor_unix.execution.executor import ExecutionResult


def _argv(mock_call) -> list[str]:
    return mock_call[0][0].argv


# =============================================================================
# Path Helper Tests
# =============================================================================


class TestUserPaths:
    """Tests for home and worktree directory derivation."""

    def test_home_dir(self):
        assert get_user_home_dir("alice") == "/home/alice"

    def test_home_dir_custom_base(self):
        assert get_user_home_dir("alice", "/users/") == "/users/alice"

    def test_worktrees_dir(self):
        assert get_user_worktrees_dir("alice") == "/home/alice/agor/worktrees"


class TestUnixUserCommands:
    """Tests for command builders."""

    def test_create_user(self):
        command = UnixUserCommands.create_user("alice", "/bin/zsh", "/users")
        assert command.argv == ["useradd", "-m", "-d", "/users/alice", "-s", "/bin/zsh", "alice"]

    def test_setup_worktrees_dir_never_recurses(self):
        command = UnixUserCommands.setup_worktrees_dir("alice", "/home")

        assert command.composite == (
            "mkdir -p /home/alice/agor/worktrees"
            " && chown -h alice:alice /home/alice/agor"
            " && chown -h alice:alice /home/alice/agor/worktrees"
        )
        assert "-R" not in command.composite


# =============================================================================
# UserManager Tests
# =============================================================================


class TestUserManager:
    """Tests for UserManager."""

    def test_exists(self, mock_executor):
        manager = UserManager(mock_executor)

        assert manager.exists("alice") is True
        assert mock_executor.succeeds.call_args[0][0].argv == ["id", "-u", "alice"]

    def test_exists_validates_before_running(self, mock_executor):
        with pytest.raises(ValidationError):
            UserManager(mock_executor).exists("alice;id")

        mock_executor.succeeds.assert_not_called()

    def test_get_parses_passwd_entry(self, mock_executor):
        mock_executor.execute.return_value = ExecutionResult(
            returncode=0, stdout="alice:x:1001:1001::/srv/alice:/bin/zsh\n", stderr=""
        )

        account = UserManager(mock_executor).get("alice")

        assert account.exists
        assert account.home_dir == "/srv/alice"
        assert account.shell == "/bin/zsh"

    def test_get_absent_user(self, mock_executor):
        mock_executor.execute.return_value = ExecutionResult(returncode=2, stdout="", stderr="")

        account = UserManager(mock_executor).get("ghost", "/users")

        assert not account.exists
        assert account.home_dir == "/users/ghost"

    def test_create(self, mock_executor):
        result = UserManager(mock_executor).create("alice", "/bin/bash", "/home")

        assert result.status == OperationStatus.PERFORMED
        assert _argv(mock_executor.execute.call_args)[0] == "useradd"

    def test_create_failure_raises_create_user_error(self, mock_executor):
        mock_executor.execute.side_effect = ExecutionError(9, "useradd: user exists", ["useradd"])

        with pytest.raises(CreateUserError) as exc_info:
            UserManager(mock_executor).create("alice")

        assert exc_info.value.returncode == 9
        assert "user exists" in exc_info.value.stderr

    def test_create_rejects_relative_shell(self, mock_executor):
        with pytest.raises(ValidationError):
            UserManager(mock_executor).create("alice", shell="bash")

        mock_executor.execute.assert_not_called()

    def test_ensure_worktrees_root_creates(self, mock_executor, home_base):
        result = UserManager(mock_executor).ensure_worktrees_root("alice", home_base)

        assert result.status == OperationStatus.PERFORMED
        assert "mkdir -p" in mock_executor.execute.call_args[0][0].composite

    def test_ensure_worktrees_root_present(self, mock_executor, home_base, user_worktrees_dir):
        result = UserManager(mock_executor).ensure_worktrees_root("alice", home_base)

        # Ownership is still reasserted
        assert result.status == OperationStatus.NO_CHANGE
        mock_executor.execute.assert_called_once()

    def test_ensure_worktrees_root_refuses_symlinked_agor_dir(
        self, mock_executor, home_base, tmp_path
    ):
        elsewhere = tmp_path / "etc"
        elsewhere.mkdir()
        os.makedirs(get_user_home_dir("alice", home_base))
        os.symlink(elsewhere, f"{get_user_home_dir('alice', home_base)}/agor")

        with pytest.raises(UnsafePathError):
            UserManager(mock_executor).ensure_worktrees_root("alice", home_base)

        mock_executor.execute.assert_not_called()

    def test_delete_absent_user_is_no_change(self, mock_executor):
        mock_executor.succeeds.return_value = False

        result = UserManager(mock_executor).delete("ghost")

        assert result.status == OperationStatus.NO_CHANGE
        mock_executor.execute.assert_not_called()

    def test_delete_preserves_home_by_default(self, mock_executor):
        result = UserManager(mock_executor).delete("alice")

        assert result.status == OperationStatus.PERFORMED
        assert _argv(mock_executor.execute.call_args) == ["userdel", "alice"]
        assert result.details["home_deleted"] is False

    def test_delete_with_home(self, mock_executor):
        result = UserManager(mock_executor).delete("alice", delete_home=True)

        assert _argv(mock_executor.execute.call_args) == ["userdel", "-r", "alice"]
        assert "home directory" in result.message
