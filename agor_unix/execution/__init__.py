"""Process execution and the audited quoting choke point."""

from agor_unix.execution.executor import (
    Command,
    CommandExecutor,
    ExecutionResult,
    build_composite,
    quote_arg,
)

__all__ = ["Command", "CommandExecutor", "ExecutionResult", "build_composite", "quote_arg"]
