"""Unix group lifecycle for multi-collaborator worktree access.

Each shared worktree gets a group ``agor_wt_<short id>``; its owners are
supplementary members. Groups are created lazily, edited additively or
subtractively, and deleted only once empty.

Membership edits are check-then-act sequences, so each one holds the
group's key lock for its whole duration. Edits to different groups do not
contend.
"""

from __future__ import annotations

import logging
import re

from agor_unix.core.errors import ExecutionError, NotFoundError, ValidationError
from agor_unix.core.locks import KeyedLock
from agor_unix.core.models import Group, OperationResult
from agor_unix.core.validation import require_absolute_path, require_group_name, require_username
from agor_unix.execution.executor import Command, CommandExecutor

logger = logging.getLogger(__name__)

# Every Agor-managed account is a member of this group
AGOR_USERS_GROUP = "agor_users"

WORKTREE_GROUP_PREFIX = "agor_wt_"
_WORKTREE_GROUP_NAME = re.compile(r"^agor_wt_([0-9a-f]{8})$")
_WORKTREE_ID_PREFIX = re.compile(r"^([0-9a-f]{8})")

# groupadd exit status when the group already exists
_GROUPADD_NAME_IN_USE = 9

# setgid on every mode so new files inherit the worktree group
WORKTREE_PERMISSION_MODES: dict[str, str] = {
    "none": "2750",
    "read": "2755",
    "write": "2777",
}


def generate_worktree_group_name(worktree_id: str) -> str:
    """``agor_wt_`` + the first 8 hex chars of the worktree UUID."""
    match = _WORKTREE_ID_PREFIX.match(worktree_id) if isinstance(worktree_id, str) else None
    if not match:
        raise ValidationError("worktree_id", worktree_id, "must start with 8 lowercase hex chars")
    return f"{WORKTREE_GROUP_PREFIX}{match.group(1)}"


def parse_worktree_group_name(name: str) -> str | None:
    """Short worktree id from a group name, or None for other groups."""
    match = _WORKTREE_GROUP_NAME.fullmatch(name)
    return match.group(1) if match else None


def is_valid_worktree_group_name(name: str) -> bool:
    return parse_worktree_group_name(name) is not None


def get_worktree_permission_mode(access: str = "read") -> str:
    try:
        return WORKTREE_PERMISSION_MODES[access]
    except KeyError:
        raise ValidationError(
            "access level", access, f"must be one of {sorted(WORKTREE_PERMISSION_MODES)}"
        ) from None


class UnixGroupCommands:
    """Command builders for group management."""

    @staticmethod
    def group_entry(name: str) -> Command:
        return Command.from_argv("getent", "group", name)

    @staticmethod
    def create_group(name: str) -> Command:
        return Command.from_argv("groupadd", name)

    @staticmethod
    def delete_group(name: str) -> Command:
        return Command.from_argv("groupdel", name)

    @staticmethod
    def add_user_to_group(username: str, name: str) -> Command:
        return Command.from_argv("usermod", "-aG", name, username)

    @staticmethod
    def remove_user_from_group(username: str, name: str) -> Command:
        return Command.from_argv("gpasswd", "-d", username, name)

    @staticmethod
    def set_directory_group(path: str, name: str, mode: str) -> Command:
        # chgrp -R does not follow symlinks without -L
        return Command.from_steps(
            [
                ["chgrp", "-R", name, path],
                ["chmod", "-R", mode, path],
            ]
        )


class GroupManager:
    """Idempotent group operations, serialized per group."""

    def __init__(self, executor: CommandExecutor, locks: KeyedLock | None = None):
        self.executor = executor
        self.locks = locks or KeyedLock()

    # --- Queries ---

    def exists(self, name: str) -> bool:
        require_group_name(name)
        return self.executor.succeeds(UnixGroupCommands.group_entry(name))

    def get(self, name: str) -> Group:
        """Read a group and its supplementary members.

        Raises:
            NotFoundError: group does not exist
        """
        require_group_name(name)
        result = self.executor.execute(UnixGroupCommands.group_entry(name), check=False)
        line = result.stdout.strip()
        if result.returncode != 0 or not line:
            raise NotFoundError("group", name)

        # name:passwd:gid:member1,member2
        fields = line.splitlines()[0].split(":")
        member_field = fields[3] if len(fields) >= 4 else ""
        members = {m.strip() for m in member_field.split(",") if m.strip()}
        return Group(name=name, members=members)

    def members(self, name: str) -> set[str]:
        return self.get(name).members

    def is_member(self, name: str, username: str) -> bool:
        require_username(username)
        try:
            return username in self.members(name)
        except NotFoundError:
            return False

    # --- Mutations ---

    def ensure_group(self, name: str) -> OperationResult:
        require_group_name(name)
        with self.locks.hold("group", name):
            if self.exists(name):
                return OperationResult.no_change("ensure-group", f"Group {name} already exists")

            try:
                self.executor.execute(UnixGroupCommands.create_group(name))
            except ExecutionError as e:
                # Another process created it between the check and groupadd
                if e.returncode == _GROUPADD_NAME_IN_USE:
                    return OperationResult.no_change(
                        "ensure-group", f"Group {name} already exists"
                    )
                raise

            logger.info(f"Created group {name}")
            return OperationResult.performed("ensure-group", f"Created group {name}", group=name)

    def add_member(self, name: str, username: str) -> OperationResult:
        """Add a supplementary member. The group must exist.

        Raises:
            NotFoundError: group does not exist
        """
        require_group_name(name)
        require_username(username)
        with self.locks.hold("group", name):
            if username in self.members(name):
                return OperationResult.no_change(
                    "add-member", f"{username} is already a member of {name}"
                )

            self.executor.execute(UnixGroupCommands.add_user_to_group(username, name))
            logger.info(f"Added {username} to group {name}")
            return OperationResult.performed(
                "add-member", f"Added {username} to {name}", group=name, username=username
            )

    def remove_member(self, name: str, username: str) -> OperationResult:
        require_group_name(name)
        require_username(username)
        with self.locks.hold("group", name):
            try:
                members = self.members(name)
            except NotFoundError:
                return OperationResult.no_change(
                    "remove-member", f"Group {name} does not exist (nothing to do)"
                )
            if username not in members:
                return OperationResult.no_change(
                    "remove-member", f"{username} is not a member of {name}"
                )

            self.executor.execute(UnixGroupCommands.remove_user_from_group(username, name))
            logger.info(f"Removed {username} from group {name}")
            return OperationResult.performed(
                "remove-member", f"Removed {username} from {name}", group=name, username=username
            )

    def delete_if_empty(self, name: str) -> OperationResult:
        require_group_name(name)
        with self.locks.hold("group", name):
            try:
                group = self.get(name)
            except NotFoundError:
                return OperationResult.no_change(
                    "delete-group", f"Group {name} does not exist (nothing to do)"
                )
            if not group.is_empty:
                return OperationResult.no_change(
                    "delete-group",
                    f"Group {name} still has {len(group.members)} member(s); kept",
                    members=sorted(group.members),
                )

            self.executor.execute(UnixGroupCommands.delete_group(name))
            logger.info(f"Deleted empty group {name}")
            return OperationResult.performed("delete-group", f"Deleted group {name}", group=name)

    def set_directory_group(self, path: str, name: str, access: str = "read") -> OperationResult:
        """Hand a directory tree to a group with a setgid permission mode."""
        require_absolute_path(path)
        require_group_name(name)
        mode = get_worktree_permission_mode(access)

        self.executor.execute(UnixGroupCommands.set_directory_group(path, name, mode))
        return OperationResult.performed(
            "set-directory-group",
            f"Set group {name} with mode {mode} on {path}",
            path=path,
            group=name,
            mode=mode,
        )
