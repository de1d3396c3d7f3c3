"""Exception hierarchy for Unix integration.

- ValidationError: malformed identifier, raised before any OS call.
- NotFoundError: an expected resource is absent. Workflows usually turn
  this into a "nothing to do" result.
- ExecutionError: an OS-level command exited non-zero.
"""

from __future__ import annotations


class UnixIntegrationError(Exception):
    """Base class for all Unix integration errors."""

    pass


class ValidationError(UnixIntegrationError, ValueError):
    """An identifier failed validation.

    Carries the offending value verbatim so callers can report it.
    """

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class NotFoundError(UnixIntegrationError):
    """Expected resource is absent."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class ExecutionError(UnixIntegrationError):
    """External command exited non-zero.

    Holds the captured stderr and exit code for diagnosis. Never retried
    automatically; every operation is safe to repeat, so retry policy
    belongs to the caller.
    """

    def __init__(self, returncode: int, stderr: str, argv: list[str] | None = None):
        self.returncode = returncode
        self.stderr = stderr
        self.argv = list(argv or [])
        command = self.argv[0] if self.argv else "command"
        detail = stderr.strip() or "(no stderr)"
        super().__init__(f"{command} exited with code {returncode}: {detail}")


class CommandTimeoutError(ExecutionError):
    """Command was killed after exceeding its timeout.

    Filesystem state after a timeout is unspecified; a later idempotent
    call reconciles it.
    """

    def __init__(self, timeout: float, argv: list[str] | None = None):
        self.timeout = timeout
        super().__init__(-1, f"timed out after {timeout}s", argv)


class CreateUserError(ExecutionError):
    """Account creation failed at the OS level despite passing validation."""

    pass


class HelperOperationError(UnixIntegrationError):
    """Requested privileged helper operation is not part of its surface."""

    pass


class UnsafePathError(UnixIntegrationError):
    """A path inside a user's home is a symlink where a directory is expected.

    Privileged ownership changes refuse to run through such paths, since a
    user-controlled symlink could redirect them anywhere on the host.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Refusing to operate through symlinked path: {path}")
