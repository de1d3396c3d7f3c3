"""Data models for Unix integration.

Uses Pydantic for structured, validated records and results.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class OperationStatus(str, Enum):
    """Outcome of an operation or workflow."""

    NO_CHANGE = "no_change"
    PERFORMED = "performed"
    FAILED = "failed"


class UnixUserMode(str, Enum):
    """How strictly sessions are tied to Unix accounts.

    - simple: no impersonation, Unix accounts optional
    - insulated: commands run as a shared executor account
    - strict: every user must have a Unix account
    """

    SIMPLE = "simple"
    INSULATED = "insulated"
    STRICT = "strict"


# --- Records ---


class UserAccount(BaseModel):
    """A Unix account as seen by the user manager."""

    username: str
    home_dir: str
    shell: str
    exists: bool = False


class SymlinkRecord(BaseModel):
    """A worktree symlink in a user's home.

    ``link_path`` is always derived from (home_base, username, worktree_name).
    """

    link_path: str
    target_path: str
    worktree_name: str


class Group(BaseModel):
    """A Unix group and its supplementary members."""

    name: str
    members: set[str] = Field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not self.members


# --- Results ---


class OperationResult(BaseModel):
    """Structured result distinguishing no-op, performed and failed."""

    operation: str
    status: OperationStatus
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status != OperationStatus.FAILED

    @property
    def changed(self) -> bool:
        return self.status == OperationStatus.PERFORMED

    @classmethod
    def no_change(cls, operation: str, message: str, **details: Any) -> OperationResult:
        return cls(
            operation=operation,
            status=OperationStatus.NO_CHANGE,
            message=message,
            details=details,
        )

    @classmethod
    def performed(cls, operation: str, message: str, **details: Any) -> OperationResult:
        return cls(
            operation=operation,
            status=OperationStatus.PERFORMED,
            message=message,
            details=details,
        )

    @classmethod
    def failed(cls, operation: str, message: str, **details: Any) -> OperationResult:
        return cls(
            operation=operation,
            status=OperationStatus.FAILED,
            message=message,
            details=details,
        )
