"""Unix account lifecycle.

Accounts move Absent -> Active on ensure-user and Active -> Absent on
delete-user. The home directory may outlive the account. Mutating calls
need root; they run inside the privileged helper.
"""

from __future__ import annotations

import logging
import os

from agor_unix.core.config import DEFAULT_HOME_BASE, DEFAULT_SHELL
from agor_unix.core.errors import CreateUserError, ExecutionError
from agor_unix.core.models import OperationResult, UserAccount
from agor_unix.core.utils import WORKTREES_DIR, join_home, reject_symlinked_dirs
from agor_unix.core.validation import require_absolute_path, require_shell, require_username
from agor_unix.execution.executor import Command, CommandExecutor

logger = logging.getLogger(__name__)


def get_user_home_dir(username: str, home_base: str = DEFAULT_HOME_BASE) -> str:
    return join_home(home_base, username)


def get_user_worktrees_dir(username: str, home_base: str = DEFAULT_HOME_BASE) -> str:
    """``{home_base}/{username}/agor/worktrees``"""
    return f"{join_home(home_base, username)}/{WORKTREES_DIR}"


class UnixUserCommands:
    """Command builders for account management.

    Argument vectors only; values are never spliced into strings.
    """

    @staticmethod
    def user_exists(username: str) -> Command:
        return Command.from_argv("id", "-u", username)

    @staticmethod
    def get_passwd_entry(username: str) -> Command:
        return Command.from_argv("getent", "passwd", username)

    @staticmethod
    def create_user(username: str, shell: str, home_base: str) -> Command:
        return Command.from_argv(
            "useradd", "-m", "-d", get_user_home_dir(username, home_base), "-s", shell, username
        )

    @staticmethod
    def delete_user(username: str) -> Command:
        return Command.from_argv("userdel", username)

    @staticmethod
    def delete_user_with_home(username: str) -> Command:
        return Command.from_argv("userdel", "-r", username)

    @staticmethod
    def setup_worktrees_dir(username: str, home_base: str) -> Command:
        """mkdir -p ~/agor/worktrees, then hand both levels to the user.

        ``chown -h`` and no ``-R``: ownership never follows a link into
        worktree content.
        """
        home = get_user_home_dir(username, home_base)
        owner = f"{username}:{username}"
        return Command.from_steps(
            [
                ["mkdir", "-p", f"{home}/{WORKTREES_DIR}"],
                ["chown", "-h", owner, f"{home}/agor"],
                ["chown", "-h", owner, f"{home}/{WORKTREES_DIR}"],
            ]
        )


class UserManager:
    """Create, inspect and delete Unix accounts."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def exists(self, username: str) -> bool:
        require_username(username)
        return self.executor.succeeds(UnixUserCommands.user_exists(username))

    def get(self, username: str, home_base: str = DEFAULT_HOME_BASE) -> UserAccount:
        """Look up an account. Absent accounts come back with ``exists=False``."""
        require_username(username)
        require_absolute_path(home_base, "home_base")

        result = self.executor.execute(UnixUserCommands.get_passwd_entry(username), check=False)
        if result.returncode == 0 and result.stdout.strip():
            # name:passwd:uid:gid:gecos:home:shell
            fields = result.stdout.strip().splitlines()[0].split(":")
            if len(fields) >= 7:
                return UserAccount(
                    username=username, home_dir=fields[5], shell=fields[6], exists=True
                )

        return UserAccount(
            username=username,
            home_dir=get_user_home_dir(username, home_base),
            shell=DEFAULT_SHELL,
            exists=False,
        )

    def create(
        self,
        username: str,
        shell: str = DEFAULT_SHELL,
        home_base: str = DEFAULT_HOME_BASE,
    ) -> OperationResult:
        """Create the account with a home directory.

        Callers check ``exists`` first; this call itself is not idempotent.

        Raises:
            CreateUserError: useradd failed (name collision, resource limits)
        """
        require_username(username)
        require_shell(shell)
        require_absolute_path(home_base, "home_base")

        logger.info(f"Creating Unix user {username} (home base {home_base})")
        try:
            self.executor.execute(UnixUserCommands.create_user(username, shell, home_base))
        except ExecutionError as e:
            raise CreateUserError(e.returncode, e.stderr, e.argv) from e

        return OperationResult.performed(
            "create-user",
            f"Created Unix user {username}",
            username=username,
            home_dir=get_user_home_dir(username, home_base),
        )

    def ensure_worktrees_root(
        self, username: str, home_base: str = DEFAULT_HOME_BASE
    ) -> OperationResult:
        """Idempotently create ``~/agor/worktrees`` owned by the user.

        Raises:
            UnsafePathError: ``~/agor`` or ``~/agor/worktrees`` is a symlink
            ExecutionError: mkdir/chown failed
        """
        require_username(username)
        require_absolute_path(home_base, "home_base")

        home = get_user_home_dir(username, home_base)
        worktrees_dir = get_user_worktrees_dir(username, home_base)
        reject_symlinked_dirs(f"{home}/agor", worktrees_dir)
        existed = os.path.isdir(worktrees_dir)

        self.executor.execute(UnixUserCommands.setup_worktrees_dir(username, home_base))

        if existed:
            return OperationResult.no_change(
                "ensure-worktrees-root",
                f"Worktrees directory already present: {worktrees_dir}",
                path=worktrees_dir,
            )
        return OperationResult.performed(
            "ensure-worktrees-root",
            f"Created worktrees directory: {worktrees_dir}",
            path=worktrees_dir,
        )

    def delete(self, username: str, delete_home: bool = False) -> OperationResult:
        """Delete the account; no-op success if it does not exist."""
        require_username(username)

        if not self.exists(username):
            return OperationResult.no_change(
                "delete-user", f"Unix user {username} does not exist (nothing to do)"
            )

        if delete_home:
            logger.info(f"Deleting Unix user {username} and home directory")
            self.executor.execute(UnixUserCommands.delete_user_with_home(username))
            message = f"Deleted Unix user {username} and home directory"
        else:
            logger.info(f"Deleting Unix user {username} (home preserved)")
            self.executor.execute(UnixUserCommands.delete_user(username))
            message = f"Deleted Unix user {username} (home directory preserved)"

        return OperationResult.performed(
            "delete-user", message, username=username, home_deleted=delete_home
        )
