"""Worktree symlinks in user home directories.

Each user sees ``~/agor/worktrees/<worktree-name>`` pointing at the real
worktree, which stays owned by the service account. The link itself is
owned by the user; ownership changes on it always use the no-dereference
variant so the target's ownership is never touched.

Replacing a link is atomic: a fresh link is created under a temporary
name and renamed over the old one, so a concurrent reader never sees the
link missing. A temporary link that survives a failed or interrupted
replace is garbage-collected by ``prune_broken`` once it is stale.
"""

from __future__ import annotations

import errno
import logging
import os
import posixpath
import time
import uuid

from agor_unix.core.config import DEFAULT_HOME_BASE
from agor_unix.core.errors import NotFoundError
from agor_unix.core.models import OperationResult, SymlinkRecord
from agor_unix.core.utils import WORKTREES_DIR, join_home, reject_symlinked_dirs
from agor_unix.core.validation import (
    TEMP_LINK_PREFIX,
    require_absolute_path,
    require_safe_slug,
    require_username,
)
from agor_unix.execution.executor import Command, CommandExecutor

logger = logging.getLogger(__name__)

# A temp link older than this belongs to no running replace
TEMP_LINK_MAX_AGE = 300.0


def derive_path(username: str, worktree_name: str, home_base: str = DEFAULT_HOME_BASE) -> str:
    """Symlink path for a worktree in a user's home. Pure, no I/O.

    >>> derive_path("alice", "my-feature")
    '/home/alice/agor/worktrees/my-feature'
    """
    require_username(username)
    require_safe_slug(worktree_name)
    require_absolute_path(home_base, "home_base")
    return f"{join_home(home_base, username)}/{WORKTREES_DIR}/{worktree_name}"


def build_info(
    username: str,
    worktree_name: str,
    target_path: str,
    home_base: str = DEFAULT_HOME_BASE,
) -> SymlinkRecord:
    """Everything a caller needs to inspect before mutating."""
    require_absolute_path(target_path, "worktree_path")
    return SymlinkRecord(
        link_path=derive_path(username, worktree_name, home_base),
        target_path=target_path,
        worktree_name=worktree_name,
    )


def _temp_link_name() -> str:
    return f"{TEMP_LINK_PREFIX}{uuid.uuid4().hex[:16]}"


class SymlinkCommands:
    """Command builders for operations that must run elevated."""

    @staticmethod
    def create_with_ownership(target: str, link_path: str, owner: str, temp_name: str) -> Command:
        """mkdir parent, chown parent, link under a temp name, chown -h, rename over.

        ``mv -T`` renames onto the link itself instead of into a directory
        it may point at; rename(2) makes the replacement atomic. If any
        step fails the temp link is removed and the command exits 1.
        """
        parent = posixpath.dirname(link_path)
        temp_path = f"{parent}/{temp_name}"
        ownership = f"{owner}:{owner}"
        return Command.from_steps(
            [
                ["mkdir", "-p", parent],
                ["chown", "-h", ownership, parent],
                ["ln", "-s", "--", target, temp_path],
                ["chown", "-h", ownership, temp_path],
                ["mv", "-Tf", "--", temp_path, link_path],
            ],
            on_failure=["rm", "-f", "--", temp_path],
        )


class SymlinkManager:
    """Create, replace, inspect and garbage-collect worktree symlinks.

    Read-only queries and plain create/replace/remove use the calling
    process's own privileges. ``create_with_ownership`` needs root and runs
    its steps as one composite command through the executor.

    Queries that could be answered wrongly from an unsearchable home
    (``read_target``, ``list_stale``) raise PermissionError instead of
    reporting "absent".
    """

    def __init__(self, executor: CommandExecutor | None = None):
        self.executor = executor or CommandExecutor()

    # --- Pure helpers ---

    derive_path = staticmethod(derive_path)
    build_info = staticmethod(build_info)

    # --- Queries ---

    def exists(self, path: str) -> bool:
        """True if ``path`` is a symlink (dangling or not)."""
        return os.path.islink(path)

    def path_exists(self, path: str) -> bool:
        """True if ``path`` resolves to something."""
        return os.path.exists(path)

    def read_target(self, path: str) -> str:
        """Raw target of a symlink.

        Raises:
            NotFoundError: ``path`` is absent or not a symlink
            PermissionError: a parent directory cannot be searched
        """
        try:
            return os.readlink(path)
        except (FileNotFoundError, NotADirectoryError):
            raise NotFoundError("symlink", path) from None
        except OSError as e:
            if e.errno == errno.EINVAL:
                # Exists, but is not a symlink
                raise NotFoundError("symlink", path) from None
            raise

    def list_entries(self, directory: str) -> list[str]:
        """Basenames of the worktree symlinks directly inside ``directory``.

        Raises:
            PermissionError: ``directory`` cannot be read
        """
        try:
            entries = os.scandir(directory)
        except (FileNotFoundError, NotADirectoryError):
            return []
        with entries:
            return sorted(
                entry.name
                for entry in entries
                if entry.is_symlink() and not entry.name.startswith(TEMP_LINK_PREFIX)
            )

    def list_stale(self, directory: str) -> list[str]:
        """Basenames ``prune_broken`` would remove from ``directory``.

        Dangling links, plus temp links left by a replace that failed or
        was interrupted more than ``TEMP_LINK_MAX_AGE`` seconds ago.

        Raises:
            PermissionError: ``directory`` cannot be read
        """
        try:
            entries = os.scandir(directory)
        except (FileNotFoundError, NotADirectoryError):
            return []

        cutoff = time.time() - TEMP_LINK_MAX_AGE
        stale = []
        with entries:
            for entry in entries:
                if not entry.is_symlink():
                    continue
                if entry.name.startswith(TEMP_LINK_PREFIX):
                    try:
                        mtime = entry.stat(follow_symlinks=False).st_mtime
                    except FileNotFoundError:
                        continue
                    if mtime < cutoff:
                        stale.append(entry.name)
                elif not os.path.exists(entry.path):
                    stale.append(entry.name)
        return sorted(stale)

    # --- Mutations ---

    def create_or_replace(self, target: str, link_path: str) -> OperationResult:
        """Point ``link_path`` at ``target``, atomically replacing any old link."""
        require_absolute_path(target, "target")
        require_absolute_path(link_path, "link_path")

        if os.path.islink(link_path) and os.readlink(link_path) == target:
            return OperationResult.no_change(
                "create-symlink", f"Symlink already exists: {link_path} -> {target}"
            )

        parent = posixpath.dirname(link_path)
        temp_path = f"{parent}/{_temp_link_name()}"
        os.symlink(target, temp_path)
        try:
            os.replace(temp_path, link_path)
        except OSError:
            os.unlink(temp_path)
            raise

        return OperationResult.performed(
            "create-symlink", f"Created symlink: {link_path} -> {target}", link_path=link_path
        )

    def create_with_ownership(self, target: str, link_path: str, owner: str) -> OperationResult:
        """Create or replace the link and give the link (not its target) to ``owner``.

        Raises:
            UnsafePathError: the parent directories are symlinks
            ExecutionError: a step of the composite command failed
        """
        require_absolute_path(target, "target")
        require_absolute_path(link_path, "link_path")
        require_username(owner, "owner")

        parent = posixpath.dirname(link_path)
        reject_symlinked_dirs(posixpath.dirname(parent), parent)

        self.executor.execute(
            SymlinkCommands.create_with_ownership(target, link_path, owner, _temp_link_name())
        )
        logger.info(f"Created symlink {link_path} -> {target} (owner {owner})")
        return OperationResult.performed(
            "create-symlink",
            f"Created symlink: {link_path} -> {target}",
            link_path=link_path,
            target_path=target,
            owner=owner,
        )

    def remove(self, link_path: str) -> OperationResult:
        """Remove a symlink; no-op success if absent. Never removes real files."""
        require_absolute_path(link_path, "link_path")

        if not os.path.islink(link_path):
            if os.path.lexists(link_path):
                return OperationResult.failed(
                    "remove-symlink", f"Not a symlink, refusing to remove: {link_path}"
                )
            return OperationResult.no_change(
                "remove-symlink", f"Symlink does not exist: {link_path} (nothing to do)"
            )

        try:
            os.unlink(link_path)
        except FileNotFoundError:
            return OperationResult.no_change(
                "remove-symlink", f"Symlink does not exist: {link_path} (nothing to do)"
            )
        logger.info(f"Removed symlink {link_path}")
        return OperationResult.performed("remove-symlink", f"Removed symlink: {link_path}")

    def prune_broken(self, directory: str) -> OperationResult:
        """Delete dangling and stale temp symlinks directly inside ``directory``.

        One level only. Entries are inspected with lstat semantics, so a
        symlinked directory is never entered and worktree content is never
        touched.

        Raises:
            UnsafePathError: ``directory`` itself is a symlink
        """
        require_absolute_path(directory, "directory")
        reject_symlinked_dirs(directory)

        if not os.path.isdir(directory):
            return OperationResult.no_change(
                "sync-user-symlinks",
                f"Worktrees directory does not exist: {directory} (nothing to do)",
            )

        removed: list[str] = []
        for name in self.list_stale(directory):
            try:
                os.unlink(posixpath.join(directory, name))
            except FileNotFoundError:
                continue
            removed.append(name)

        if not removed:
            return OperationResult.no_change(
                "sync-user-symlinks", f"No broken symlinks in: {directory}"
            )
        logger.info(f"Pruned {len(removed)} broken symlink(s) in {directory}")
        return OperationResult.performed(
            "sync-user-symlinks",
            f"Cleaned up {len(removed)} broken symlink(s) in: {directory}",
            removed=removed,
        )
