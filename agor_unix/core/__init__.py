"""Core modules for Agor Unix integration."""

from agor_unix.core.errors import (
    ExecutionError,
    NotFoundError,
    UnixIntegrationError,
    ValidationError,
)
from agor_unix.core.models import (
    Group,
    OperationResult,
    OperationStatus,
    SymlinkRecord,
    UnixUserMode,
    UserAccount,
)

__all__ = [
    "ExecutionError",
    "NotFoundError",
    "UnixIntegrationError",
    "ValidationError",
    "Group",
    "OperationResult",
    "OperationStatus",
    "SymlinkRecord",
    "UnixUserMode",
    "UserAccount",
]
