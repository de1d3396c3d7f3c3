"""Input validation for identifiers embedded in privileged commands.

These predicates are the only functions allowed to approve a value for a
privileged command. They are pure and do no I/O. Every caller-supplied
identifier goes through one of the ``require_*`` helpers before it reaches
the command executor; a failure raises ValidationError and no OS
interaction is attempted.
"""

from __future__ import annotations

import re

from agor_unix.core.errors import ValidationError

# POSIX-portable username: lowercase letters, digits, underscore, hyphen.
# Must not start with a digit or hyphen. 1-32 characters.
_VALID_USERNAME = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

MAX_PATH_LENGTH = 4096
MAX_SLUG_LENGTH = 255

# Names of in-flight replacement links; never a worktree name
TEMP_LINK_PREFIX = ".agor-tmp-"


def is_valid_username(value: object) -> bool:
    """Check a Unix username against the portable charset."""
    # fullmatch so a trailing newline cannot slip past "$"
    return isinstance(value, str) and _VALID_USERNAME.fullmatch(value) is not None


def is_valid_group_name(value: object) -> bool:
    """Group names follow the same rules as usernames."""
    return is_valid_username(value)


def is_absolute_path(value: object) -> bool:
    """Check that a path is absolute and safe to hand to a privileged command.

    Rejects NUL, newlines and ``..`` segments so the path means the same
    thing to every tool that sees it.
    """
    if not isinstance(value, str) or not value.startswith("/"):
        return False
    if len(value) > MAX_PATH_LENGTH:
        return False
    if "\x00" in value or "\n" in value or "\r" in value:
        return False
    return ".." not in value.split("/")


def is_safe_slug(value: object) -> bool:
    """Check a worktree name used as a single path segment."""
    if not isinstance(value, str) or not value:
        return False
    if len(value) > MAX_SLUG_LENGTH:
        return False
    if value in (".", ".."):
        return False
    if "/" in value or ".." in value:
        return False
    if value.startswith(TEMP_LINK_PREFIX):
        return False
    return not any(ch in value for ch in ("\x00", "\n", "\r"))


def require_username(value: object, field: str = "username") -> str:
    if not is_valid_username(value):
        raise ValidationError(
            field,
            value,
            "must be 1-32 chars of [a-z0-9_-] and must not start with a digit or hyphen",
        )
    return value  # type: ignore[return-value]


def require_group_name(value: object, field: str = "group") -> str:
    if not is_valid_group_name(value):
        raise ValidationError(
            field,
            value,
            "must be 1-32 chars of [a-z0-9_-] and must not start with a digit or hyphen",
        )
    return value  # type: ignore[return-value]


def require_absolute_path(value: object, field: str = "path") -> str:
    if not is_absolute_path(value):
        raise ValidationError(
            field, value, "must be an absolute path without '..', NUL or newlines"
        )
    return value  # type: ignore[return-value]


def require_safe_slug(value: object, field: str = "worktree_name") -> str:
    if not is_safe_slug(value):
        raise ValidationError(
            field,
            value,
            f"must be a single path segment (no '/', '..' or NUL, max {MAX_SLUG_LENGTH} chars)"
            f" not starting with {TEMP_LINK_PREFIX!r}",
        )
    return value  # type: ignore[return-value]


def require_shell(value: object, field: str = "shell") -> str:
    """Login shells are absolute paths like any other."""
    return require_absolute_path(value, field)
