"""Privileged helper for Agor Unix integration.

Runs as root through ``sudo -n``; the service never mutates accounts or
home directories itself. The surface is deliberately closed:

- agor-unix-admin ensure-user: Create a user (if absent) and ~/agor/worktrees
- agor-unix-admin delete-user: Delete a user, optionally with their home
- agor-unix-admin create-symlink: Create or retarget a worktree symlink
- agor-unix-admin remove-symlink: Remove a worktree symlink
- agor-unix-admin sync-user-symlinks: Remove broken worktree symlinks

SECURITY: every argument is validated again here, whatever the caller did.
Exit codes: 0 success or nothing to do, 1 failure, 2 invalid argument.
The caller reads stdout back: a status line starting with ✅ means
something changed, ℹ️ means it was already in place.
"""

from __future__ import annotations

import contextlib
import logging
import sys
from collections.abc import Generator
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from agor_unix import __version__
from agor_unix.core.config import ConfigError, UnixConfig, load_config
from agor_unix.core.errors import UnixIntegrationError, ValidationError
from agor_unix.core.models import OperationResult, OperationStatus
from agor_unix.core.privileged import FAILED_MARK, NO_CHANGE_MARK, PERFORMED_MARK
from agor_unix.core.symlinks import SymlinkManager, derive_path
from agor_unix.core.users import UserManager, get_user_home_dir, get_user_worktrees_dir
from agor_unix.core.utils import reject_symlinked_dirs
from agor_unix.core.validation import (
    require_absolute_path,
    require_safe_slug,
    require_shell,
    require_username,
)
from agor_unix.execution.executor import CommandExecutor

# Status lines are read back by the caller; never hard-wrap them
console = Console(soft_wrap=True)
logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_INVALID = 2


@contextlib.contextmanager
def _report_errors() -> Generator[None, None, None]:
    """Map exceptions to a red status line and the helper's exit codes."""
    try:
        yield
    except ValidationError as e:
        console.print(f"[red]Invalid argument:[/] {escape(str(e))}")
        sys.exit(EXIT_INVALID)
    except (UnixIntegrationError, ConfigError, OSError) as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_FAILURE)


def _print_result(result: OperationResult) -> None:
    if result.status == OperationStatus.FAILED:
        console.print(f"[red]{FAILED_MARK} {escape(result.message)}[/]")
        sys.exit(EXIT_FAILURE)
    if result.status == OperationStatus.PERFORMED:
        console.print(f"[green]{PERFORMED_MARK} {escape(result.message)}[/]")
    else:
        console.print(f"{NO_CHANGE_MARK}  {escape(result.message)}")


def _config(ctx: click.Context) -> UnixConfig:
    return ctx.obj["config"]


def _executor(ctx: click.Context) -> CommandExecutor:
    # Already root: never elevate again
    return CommandExecutor.from_config(_config(ctx))


def _guard_worktrees_dir(username: str, home_base: str) -> str:
    """Worktrees dir for the user, refusing symlinks planted along the way."""
    home = get_user_home_dir(username, home_base)
    worktrees_dir = get_user_worktrees_dir(username, home_base)
    reject_symlinked_dirs(f"{home}/agor", worktrees_dir)
    return worktrees_dir


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $AGOR_UNIX_CONFIG or /etc/agor/unix.yaml)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Agor Unix admin - privileged helper for user and symlink management.

    Invoked by the Agor service through sudo. Safe to run by hand.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    with _report_errors():
        ctx.obj["config"] = load_config(config_path)


@main.command("ensure-user")
@click.option("--username", required=True, help="Unix username")
@click.option("--home-base", default=None, help="Home directory base (default: from config)")
@click.option("--shell", default=None, help="Login shell (default: from config)")
@click.pass_context
def ensure_user(ctx: click.Context, username: str, home_base: str | None, shell: str | None) -> None:
    """Create a Unix user if absent, then ensure ~/agor/worktrees.

    Example:
        agor-unix-admin ensure-user --username=alice
    """
    config = _config(ctx)
    with _report_errors():
        require_username(username)
        home_base = require_absolute_path(home_base or config.home_base, "home_base")
        shell = require_shell(shell or config.default_shell)

        users = UserManager(_executor(ctx))
        if users.exists(username):
            console.print(f"{NO_CHANGE_MARK}  Unix user {escape(username)} already exists")
        else:
            _print_result(users.create(username, shell, home_base))

        _print_result(users.ensure_worktrees_root(username, home_base))


@main.command("delete-user")
@click.option("--username", required=True, help="Unix username")
@click.option("--delete-home", is_flag=True, help="Also delete the home directory")
@click.pass_context
def delete_user(ctx: click.Context, username: str, delete_home: bool) -> None:
    """Delete a Unix user. Succeeds if the user does not exist.

    Example:
        agor-unix-admin delete-user --username=alice --delete-home
    """
    with _report_errors():
        require_username(username)
        users = UserManager(_executor(ctx))
        _print_result(users.delete(username, delete_home=delete_home))


@main.command("create-symlink")
@click.option("--username", required=True, help="Owner of the symlink")
@click.option("--worktree-name", required=True, help="Symlink name under ~/agor/worktrees")
@click.option("--worktree-path", required=True, help="Absolute path of the worktree")
@click.option("--home-base", default=None, help="Home directory base (default: from config)")
@click.pass_context
def create_symlink(
    ctx: click.Context,
    username: str,
    worktree_name: str,
    worktree_path: str,
    home_base: str | None,
) -> None:
    """Create or retarget ~/agor/worktrees/<name>, owned by the user.

    Example:
        agor-unix-admin create-symlink --username=alice \\
            --worktree-name=my-feature --worktree-path=/var/agor/worktrees/abc
    """
    config = _config(ctx)
    with _report_errors():
        require_username(username)
        require_safe_slug(worktree_name)
        require_absolute_path(worktree_path, "worktree_path")
        home_base = require_absolute_path(home_base or config.home_base, "home_base")

        link_path = derive_path(username, worktree_name, home_base)
        symlinks = SymlinkManager(_executor(ctx))

        if symlinks.exists(link_path):
            current = symlinks.read_target(link_path)
            if current == worktree_path:
                console.print(
                    f"{NO_CHANGE_MARK}  Symlink already exists: {escape(link_path)} -> {escape(worktree_path)}"
                )
                return
            console.print(f"Updating symlink (was: {escape(current)})")

        _print_result(symlinks.create_with_ownership(worktree_path, link_path, username))


@main.command("remove-symlink")
@click.option("--username", required=True, help="Owner of the symlink")
@click.option("--worktree-name", required=True, help="Symlink name under ~/agor/worktrees")
@click.option("--home-base", default=None, help="Home directory base (default: from config)")
@click.pass_context
def remove_symlink(
    ctx: click.Context, username: str, worktree_name: str, home_base: str | None
) -> None:
    """Remove ~/agor/worktrees/<name>. Succeeds if it does not exist.

    Example:
        agor-unix-admin remove-symlink --username=alice --worktree-name=my-feature
    """
    config = _config(ctx)
    with _report_errors():
        require_username(username)
        require_safe_slug(worktree_name)
        home_base = require_absolute_path(home_base or config.home_base, "home_base")

        link_path = derive_path(username, worktree_name, home_base)
        _guard_worktrees_dir(username, home_base)
        _print_result(SymlinkManager(_executor(ctx)).remove(link_path))


@main.command("sync-user-symlinks")
@click.option("--username", required=True, help="Unix username")
@click.option("--home-base", default=None, help="Home directory base (default: from config)")
@click.pass_context
def sync_user_symlinks(ctx: click.Context, username: str, home_base: str | None) -> None:
    """Remove broken symlinks in ~/agor/worktrees.

    Example:
        agor-unix-admin sync-user-symlinks --username=alice
    """
    config = _config(ctx)
    with _report_errors():
        require_username(username)
        home_base = require_absolute_path(home_base or config.home_base, "home_base")

        worktrees_dir = _guard_worktrees_dir(username, home_base)
        result = SymlinkManager(_executor(ctx)).prune_broken(worktrees_dir)
        for name in result.details.get("removed", []):
            logger.debug(f"Removed broken symlink {worktrees_dir}/{name}")
        _print_result(result)


if __name__ == "__main__":
    main()
