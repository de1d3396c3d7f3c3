"""Shared path helpers for the user and symlink managers."""

from __future__ import annotations

import os

from agor_unix.core.errors import UnsafePathError

# Relative to the user's home
WORKTREES_DIR = "agor/worktrees"


def join_home(home_base: str, username: str) -> str:
    """Home directory for ``username`` under ``home_base``.

    Plain string joining: derived paths must be a pure function of their
    inputs, independent of the filesystem.
    """
    return f"{home_base.rstrip('/')}/{username}"


def reject_symlinked_dirs(*paths: str) -> None:
    """Raise if any existing path is a symlink.

    Used before root changes ownership inside a user's home: a symlink the
    user planted at ``~/agor`` must not redirect a chown to another tree.

    Raises:
        UnsafePathError: a path exists and is a symlink
    """
    for path in paths:
        if os.path.islink(path):
            raise UnsafePathError(path)
