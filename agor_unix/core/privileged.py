"""Client side of the privilege boundary.

The service runs unprivileged. Anything that mutates another user's
account or home tree is delegated to the ``agor-unix-admin`` helper,
re-executed through ``sudo -n``. The helper has a small, closed set of
subcommands and only ever receives validated scalar strings, so the whole
privileged surface is auditable from process invocation records.

The helper re-validates every argument on its own side. Validation here
only avoids a pointless privileged round trip.

The helper reports its outcome as status lines on stdout. When the
service cannot inspect a home itself, those lines are the only record of
whether anything changed (``reported_change``, ``status_message``).
"""

from __future__ import annotations

import logging
import re

from agor_unix.core.errors import HelperOperationError
from agor_unix.core.validation import (
    require_absolute_path,
    require_safe_slug,
    require_shell,
    require_username,
)
from agor_unix.execution.executor import Command, CommandExecutor, ExecutionResult

logger = logging.getLogger(__name__)

HELPER_OPERATIONS = frozenset(
    {
        "ensure-user",
        "delete-user",
        "create-symlink",
        "remove-symlink",
        "sync-user-symlinks",
    }
)

# Status-line marks; the helper starts a line with PERFORMED_MARK only
# when it changed something
PERFORMED_MARK = "✅"
NO_CHANGE_MARK = "ℹ️"
FAILED_MARK = "❌"

# Colour codes, present when the helper's console was forced into terminal mode
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


def _status_lines(result: ExecutionResult) -> list[str]:
    text = _ANSI_ESCAPE.sub("", result.stdout)
    return [line.strip() for line in text.splitlines() if line.strip()]


def reported_change(result: ExecutionResult) -> bool:
    """True if the helper's output reports that it changed something."""
    return any(line.startswith(PERFORMED_MARK) for line in _status_lines(result))


def status_message(result: ExecutionResult) -> str:
    """Last status line of the helper's output, without its mark.

    >>> status_message(ExecutionResult(returncode=0, stdout="ℹ️  Unix user alice already exists\\n", stderr=""))
    'Unix user alice already exists'
    """
    lines = _status_lines(result)
    if not lines:
        return ""
    message = lines[-1]
    for mark in (PERFORMED_MARK, NO_CHANGE_MARK, FAILED_MARK):
        message = message.removeprefix(mark)
    return message.strip()


class PrivilegedHelper:
    """Invoke the privileged helper with validated arguments."""

    def __init__(self, executor: CommandExecutor, helper_command: list[str] | None = None):
        self.executor = executor
        self.helper_command = list(helper_command or ["agor-unix-admin"])

    @classmethod
    def from_config(cls, config) -> PrivilegedHelper:
        return cls(CommandExecutor.from_config(config, elevated=True), config.helper_command)

    def build_argv(self, operation: str, **flags: str | bool) -> list[str]:
        """Helper argv for ``operation``; underscores in flag names become dashes.

        >>> PrivilegedHelper(CommandExecutor()).build_argv("delete-user", username="alice", delete_home=True)
        ['agor-unix-admin', 'delete-user', '--username=alice', '--delete-home']
        """
        if operation not in HELPER_OPERATIONS:
            raise HelperOperationError(f"Unknown privileged operation: {operation!r}")

        argv = [*self.helper_command, operation]
        for name, value in flags.items():
            flag = f"--{name.replace('_', '-')}"
            if isinstance(value, bool):
                if value:
                    argv.append(flag)
            else:
                # --flag=value keeps a value starting with "-" from parsing as an option
                argv.append(f"{flag}={value}")
        return argv

    def run(self, operation: str, **flags: str | bool) -> ExecutionResult:
        """Run one helper operation.

        Raises:
            ExecutionError: helper exited non-zero
        """
        argv = self.build_argv(operation, **flags)
        result = self.executor.execute(Command(argv=argv))
        status = result.stdout.strip().splitlines()
        if status:
            logger.info(f"[{operation}] {status[-1]}")
        return result

    # --- Typed wrappers, one per helper subcommand ---

    def ensure_user(self, username: str, home_base: str, shell: str) -> ExecutionResult:
        require_username(username)
        require_absolute_path(home_base, "home_base")
        require_shell(shell)
        return self.run("ensure-user", username=username, home_base=home_base, shell=shell)

    def delete_user(self, username: str, delete_home: bool = False) -> ExecutionResult:
        require_username(username)
        return self.run("delete-user", username=username, delete_home=bool(delete_home))

    def create_symlink(
        self, username: str, worktree_name: str, worktree_path: str, home_base: str
    ) -> ExecutionResult:
        require_username(username)
        require_safe_slug(worktree_name)
        require_absolute_path(worktree_path, "worktree_path")
        require_absolute_path(home_base, "home_base")
        return self.run(
            "create-symlink",
            username=username,
            worktree_name=worktree_name,
            worktree_path=worktree_path,
            home_base=home_base,
        )

    def remove_symlink(self, username: str, worktree_name: str, home_base: str) -> ExecutionResult:
        require_username(username)
        require_safe_slug(worktree_name)
        require_absolute_path(home_base, "home_base")
        return self.run(
            "remove-symlink",
            username=username,
            worktree_name=worktree_name,
            home_base=home_base,
        )

    def sync_user_symlinks(self, username: str, home_base: str) -> ExecutionResult:
        require_username(username)
        require_absolute_path(home_base, "home_base")
        return self.run("sync-user-symlinks", username=username, home_base=home_base)
