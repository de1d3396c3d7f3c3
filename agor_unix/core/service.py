"""Composite, idempotent Unix integration workflows.

Workflows: onboard, attach, detach, sync, offboard. Each is built from
idempotent primitives, so the error policy is forward-only: completed
steps are never rolled back, and a failed workflow is fixed by calling it
again.

Results distinguish NO_CHANGE, PERFORMED and FAILED so callers can audit.
ValidationError is never turned into a result; it propagates to the
caller untouched, before any OS interaction.

Concurrency: every workflow holds a per-resource-key lock for its whole
check-then-act sequence. Attach/detach lock on (username, worktree_name),
user lifecycle and sync lock on the username, group edits lock on the
group name inside GroupManager.
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Callable

from agor_unix.core.config import UnixConfig
from agor_unix.core.errors import ExecutionError, NotFoundError, ValidationError
from agor_unix.core.groups import GroupManager, generate_worktree_group_name
from agor_unix.core.locks import KeyedLock, LockTimeoutError
from agor_unix.core.models import OperationResult, OperationStatus, UnixUserMode
from agor_unix.core.privileged import PrivilegedHelper, reported_change, status_message
from agor_unix.core.symlinks import SymlinkManager, build_info, derive_path
from agor_unix.core.users import UserManager, get_user_worktrees_dir
from agor_unix.core.validation import require_absolute_path, require_username
from agor_unix.execution.executor import CommandExecutor, ExecutionResult

logger = logging.getLogger(__name__)


class UnixIntegrationService:
    """Orchestrates users, groups and symlinks for the caller.

    Read-only pre-checks run with the service's own privileges; mutations
    go through the privileged helper (users, symlinks) or the elevated
    executor (groups). When a pre-check cannot see into the user's home,
    the helper is called anyway and its status line decides the result.
    """

    def __init__(
        self,
        config: UnixConfig | None = None,
        *,
        executor: CommandExecutor | None = None,
        helper: PrivilegedHelper | None = None,
        users: UserManager | None = None,
        groups: GroupManager | None = None,
        symlinks: SymlinkManager | None = None,
        locks: KeyedLock | None = None,
    ):
        self.config = config or UnixConfig()
        executor = executor or CommandExecutor.from_config(self.config)
        self.locks = locks or KeyedLock(lock_dir=self.config.lock_dir)
        self.helper = helper or PrivilegedHelper.from_config(self.config)
        self.users = users or UserManager(executor)
        self.groups = groups or GroupManager(
            CommandExecutor.from_config(self.config, elevated=True), locks=self.locks
        )
        self.symlinks = symlinks or SymlinkManager(executor)

    def is_enabled(self) -> bool:
        return self.config.enabled

    def resolve_execution_user(self, unix_username: str | None) -> str | None:
        """Account a session should run as, given the configured mode.

        Strict mode requires a Unix account; the other modes allow none.
        """
        if unix_username:
            return require_username(unix_username, "unix_username")
        if self.config.mode == UnixUserMode.STRICT:
            raise ValidationError(
                "unix_username", unix_username, "required in strict Unix user mode"
            )
        return None

    # =========================================================================
    # Workflows
    # =========================================================================

    def onboard_user(self, username: str, home_base: str | None = None) -> OperationResult:
        """Ensure the account exists, then its worktrees root."""
        home_base = self._home_base(home_base)
        require_username(username)
        worktrees_dir = get_user_worktrees_dir(username, home_base)

        def action() -> OperationResult:
            existed = self.users.exists(username)
            present = self._dir_present(worktrees_dir) if existed else False
            if present:
                return OperationResult.no_change(
                    "onboard-user", f"Unix user {username} already exists", username=username
                )

            output = self.helper.ensure_user(username, home_base, self.config.default_shell)
            if present is None:
                return self._helper_result(
                    "onboard-user",
                    output,
                    username=username,
                    created_account=False,
                    worktrees_dir=worktrees_dir,
                )

            message = (
                f"Ensured worktrees directory for {username}"
                if existed
                else f"Created Unix user {username}"
            )
            return OperationResult.performed(
                "onboard-user",
                message,
                username=username,
                created_account=not existed,
                worktrees_dir=worktrees_dir,
            )

        return self._run("onboard-user", ("user", username), action)

    def attach_worktree(
        self,
        username: str,
        worktree_name: str,
        worktree_path: str,
        home_base: str | None = None,
    ) -> OperationResult:
        """Expose a worktree in the user's home, creating or retargeting its link."""
        home_base = self._home_base(home_base)
        info = build_info(username, worktree_name, worktree_path, home_base)

        def action() -> OperationResult:
            try:
                current = self._current_target(info.link_path)
            except PermissionError:
                logger.debug(f"Cannot inspect {info.link_path}; asking the helper")
                output = self.helper.create_symlink(
                    username, worktree_name, worktree_path, home_base
                )
                return self._helper_result(
                    "attach-worktree",
                    output,
                    link_path=info.link_path,
                    target_path=info.target_path,
                )

            if current == info.target_path:
                return OperationResult.no_change(
                    "attach-worktree",
                    f"Symlink already exists: {info.link_path} -> {info.target_path}",
                    link_path=info.link_path,
                )

            self.helper.create_symlink(username, worktree_name, worktree_path, home_base)

            if current is None:
                return OperationResult.performed(
                    "attach-worktree",
                    f"Created symlink: {info.link_path} -> {info.target_path}",
                    link_path=info.link_path,
                    target_path=info.target_path,
                )
            return OperationResult.performed(
                "attach-worktree",
                f"Updated symlink: {info.link_path} -> {info.target_path} (was: {current})",
                link_path=info.link_path,
                target_path=info.target_path,
                previous_target=current,
            )

        return self._run("attach-worktree", ("symlink", username, worktree_name), action)

    def detach_worktree(
        self, username: str, worktree_name: str, home_base: str | None = None
    ) -> OperationResult:
        home_base = self._home_base(home_base)
        link_path = derive_path(username, worktree_name, home_base)

        def action() -> OperationResult:
            try:
                current = self._current_target(link_path)
            except PermissionError:
                logger.debug(f"Cannot inspect {link_path}; asking the helper")
                output = self.helper.remove_symlink(username, worktree_name, home_base)
                return self._helper_result("detach-worktree", output, link_path=link_path)

            if current is None:
                return OperationResult.no_change(
                    "detach-worktree",
                    f"Symlink does not exist: {link_path} (nothing to do)",
                    link_path=link_path,
                )
            self.helper.remove_symlink(username, worktree_name, home_base)
            return OperationResult.performed(
                "detach-worktree", f"Removed symlink: {link_path}", link_path=link_path
            )

        return self._run("detach-worktree", ("symlink", username, worktree_name), action)

    def sync_user(self, username: str, home_base: str | None = None) -> OperationResult:
        """Garbage-collect broken links under the user's worktrees root.

        Safe on a schedule. Skips the privileged call when a local scan
        finds nothing to remove. When the service cannot read the
        directory, the helper scans it and its status line decides the
        result.
        """
        home_base = self._home_base(home_base)
        require_username(username)
        worktrees_dir = get_user_worktrees_dir(username, home_base)

        def action() -> OperationResult:
            present = self._dir_present(worktrees_dir)
            if present is False:
                return OperationResult.no_change(
                    "sync-user",
                    f"Worktrees directory does not exist: {worktrees_dir} (nothing to do)",
                )

            stale = self._scan_stale(worktrees_dir) if present else None
            if stale == []:
                return OperationResult.no_change(
                    "sync-user", f"No broken symlinks in: {worktrees_dir}"
                )

            output = self.helper.sync_user_symlinks(username, home_base)
            if stale is None or not reported_change(output):
                return self._helper_result("sync-user", output)
            return OperationResult.performed(
                "sync-user",
                f"Cleaned up {len(stale)} broken symlink(s) in: {worktrees_dir}",
                removed=stale,
            )

        return self._run("sync-user", ("user", username), action)

    def offboard_user(self, username: str, delete_home: bool = False) -> OperationResult:
        require_username(username)

        def action() -> OperationResult:
            if not self.users.exists(username):
                return OperationResult.no_change(
                    "offboard-user", f"Unix user {username} does not exist (nothing to do)"
                )
            self.helper.delete_user(username, delete_home)
            suffix = "and home directory" if delete_home else "(home directory preserved)"
            return OperationResult.performed(
                "offboard-user",
                f"Deleted Unix user {username} {suffix}",
                username=username,
                home_deleted=delete_home,
            )

        return self._run("offboard-user", ("user", username), action)

    # =========================================================================
    # Worktree ownership (group + symlink together)
    # =========================================================================

    def add_user_to_worktree_group(
        self,
        worktree_id: str,
        username: str,
        worktree_name: str,
        worktree_path: str,
        home_base: str | None = None,
    ) -> OperationResult:
        """Grant a new worktree owner group access and a link in their home."""
        group = generate_worktree_group_name(worktree_id)
        build_info(username, worktree_name, worktree_path, self._home_base(home_base))

        try:
            steps = [
                self.groups.ensure_group(group),
                self.groups.add_member(group, username),
            ]
        except (ExecutionError, LockTimeoutError, NotFoundError) as e:
            return self._failure("add-worktree-owner", e)

        steps.append(self.attach_worktree(username, worktree_name, worktree_path, home_base))
        return self._combine("add-worktree-owner", f"{username} -> {group}", steps, group=group)

    def remove_user_from_worktree_group(
        self,
        worktree_id: str,
        username: str,
        worktree_name: str,
        home_base: str | None = None,
    ) -> OperationResult:
        """Revoke a former owner's link and membership; drop the group once empty."""
        group = generate_worktree_group_name(worktree_id)

        # Validates username and worktree name before any group change
        detached = self.detach_worktree(username, worktree_name, home_base)
        if not detached.ok:
            return detached

        try:
            steps = [
                detached,
                self.groups.remove_member(group, username),
                self.groups.delete_if_empty(group),
            ]
        except (ExecutionError, LockTimeoutError) as e:
            return self._failure("remove-worktree-owner", e)

        return self._combine(
            "remove-worktree-owner", f"{username} -/-> {group}", steps, group=group
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _home_base(self, home_base: str | None) -> str:
        return require_absolute_path(home_base or self.config.home_base, "home_base")

    @staticmethod
    def _dir_present(path: str) -> bool | None:
        """Whether ``path`` is a directory, or None if the service cannot tell."""
        try:
            return stat.S_ISDIR(os.stat(path).st_mode)
        except (FileNotFoundError, NotADirectoryError):
            return False
        except PermissionError:
            return None

    def _scan_stale(self, directory: str) -> list[str] | None:
        """Links the helper's sync would remove, or None if ``directory`` cannot be read."""
        try:
            return self.symlinks.list_stale(directory)
        except PermissionError:
            return None

    def _current_target(self, link_path: str) -> str | None:
        """Target of the link, None if there is none.

        Raises:
            PermissionError: the user's home cannot be searched
        """
        try:
            return self.symlinks.read_target(link_path)
        except NotFoundError:
            return None

    @staticmethod
    def _helper_result(
        operation: str, output: ExecutionResult, **details: object
    ) -> OperationResult:
        """Result taken from the helper's own status line."""
        message = status_message(output) or f"{operation} completed"
        if reported_change(output):
            return OperationResult.performed(operation, message, **details)
        return OperationResult.no_change(operation, message, **details)

    def _run(
        self,
        operation: str,
        lock_key: tuple[str, ...],
        action: Callable[[], OperationResult],
    ) -> OperationResult:
        """Run ``action`` under the resource lock, mapping OS failures to a result."""
        try:
            with self.locks.hold(*lock_key):
                result = action()
        except (ExecutionError, LockTimeoutError) as e:
            return self._failure(operation, e)

        logger.info(f"[{operation}] {result.status.value}: {result.message}")
        return result

    def _failure(self, operation: str, error: Exception) -> OperationResult:
        details: dict[str, object] = {"error": str(error)}
        if isinstance(error, ExecutionError):
            details["returncode"] = error.returncode
            details["stderr"] = error.stderr
        logger.error(f"[{operation}] failed: {error}")
        return OperationResult.failed(operation, f"{operation} failed: {error}", **details)

    @staticmethod
    def _combine(
        operation: str, subject: str, steps: list[OperationResult], **details: object
    ) -> OperationResult:
        step_details = [step.model_dump(mode="json") for step in steps]
        if any(step.status == OperationStatus.FAILED for step in steps):
            failed = next(step for step in steps if step.status == OperationStatus.FAILED)
            return OperationResult.failed(
                operation, f"{subject}: {failed.message}", steps=step_details, **details
            )
        if any(step.changed for step in steps):
            return OperationResult.performed(
                operation, f"{subject}: updated", steps=step_details, **details
            )
        return OperationResult.no_change(
            operation, f"{subject}: already in place", steps=step_details, **details
        )
