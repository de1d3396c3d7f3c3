"""Command execution for Unix integration.

This is the only module that spawns processes and the only module that
quotes arguments. Commands are argument vectors wherever the target tool
allows it. When several privileged steps must run as one elevated
invocation, they are chained into a single composite string by
``build_composite``, which passes every embedded value through
``quote_arg`` independently.

SECURITY: never interpolate a value into a command string by hand. Use
``quote_arg`` / ``build_composite``.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from collections.abc import Sequence

from pydantic import BaseModel

from agor_unix.core.errors import CommandTimeoutError, ExecutionError, ValidationError
from agor_unix.core.validation import require_username

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024

_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# =============================================================================
# Quoting
# =============================================================================


def quote_arg(value: str) -> str:
    """Quote one value for embedding in a shell command.

    The single choke point for putting untrusted text into a shell string.
    Uses POSIX single-quote escaping: ``it's`` becomes ``'it'"'"'s'``.
    Quotes, backticks, ``$`` and newlines all end up inert inside single
    quotes. NUL cannot be carried by a process argument at all, so it is
    rejected.
    """
    if not isinstance(value, str):
        raise ValidationError("shell argument", value, "must be a string")
    if "\x00" in value:
        raise ValidationError("shell argument", value, "contains NUL byte")
    return shlex.quote(value)


def build_composite(
    steps: Sequence[Sequence[str]], on_failure: Sequence[str] | None = None
) -> str:
    """Chain argument vectors into one ``&&``-joined shell command.

    Every element of every step is quoted independently, including the
    program names, so no element can change the structure of the chain.
    ``on_failure`` runs when any step fails, and the chain still exits 1.
    """
    if not steps:
        raise ValueError("composite command needs at least one step")
    rendered = []
    for step in steps:
        if not step:
            raise ValueError("composite command step must not be empty")
        rendered.append(" ".join(quote_arg(arg) for arg in step))
    chain = " && ".join(rendered)
    if on_failure:
        cleanup = " ".join(quote_arg(arg) for arg in on_failure)
        chain = f"{chain} || {{ {cleanup}; exit 1; }}"
    return chain


# =============================================================================
# Commands and results
# =============================================================================


class Command(BaseModel):
    """An argument vector, or a composite string run through ``sh -c``."""

    argv: list[str] = []
    composite: str | None = None

    @classmethod
    def from_argv(cls, *argv: str) -> Command:
        return cls(argv=list(argv))

    @classmethod
    def from_steps(
        cls, steps: Sequence[Sequence[str]], on_failure: Sequence[str] | None = None
    ) -> Command:
        return cls(composite=build_composite(steps, on_failure))

    def to_argv(self) -> list[str]:
        if self.composite is not None:
            return ["sh", "-c", self.composite]
        if not self.argv:
            raise ValueError("command has no argv")
        for arg in self.argv:
            if "\x00" in arg:
                raise ValidationError("command argument", arg, "contains NUL byte")
        return list(self.argv)


class ExecutionResult(BaseModel):
    """Result of a command execution."""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Cut on bytes without splitting a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


# =============================================================================
# Executor
# =============================================================================


class CommandExecutor:
    """Spawn and wait on external processes.

    One process per call, blocking, no retries. An optional ``elevation``
    prefix (e.g. ``["sudo", "-n"]``) is prepended to every command this
    executor runs.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        elevation: Sequence[str] | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self.timeout = timeout
        self.elevation = list(elevation or [])
        self.max_output_bytes = max_output_bytes

    @classmethod
    def from_config(cls, config, elevated: bool = False) -> CommandExecutor:
        """Build an executor from a UnixConfig."""
        return cls(
            timeout=config.command_timeout,
            elevation=config.elevation if elevated else None,
            max_output_bytes=config.max_output_bytes,
        )

    @property
    def elevated(self) -> bool:
        return bool(self.elevation)

    def execute(
        self,
        command: Command | Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run a command to completion.

        Raises:
            ExecutionError: command exited non-zero (when ``check``) or
                could not be started
            CommandTimeoutError: command was killed after the timeout
        """
        if not isinstance(command, Command):
            command = Command(argv=list(command))
        argv = self.elevation + command.to_argv()
        effective_timeout = timeout or self.timeout

        logger.debug(f"Executing: {shlex.join(argv)}")
        try:
            # subprocess.run kills the child when the timeout expires
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {effective_timeout}s: {argv[0]}")
            raise CommandTimeoutError(effective_timeout, argv) from e
        except OSError as e:
            raise ExecutionError(127, str(e), argv) from e

        result = ExecutionResult(
            returncode=proc.returncode,
            stdout=_truncate_output(proc.stdout or "", self.max_output_bytes),
            stderr=_truncate_output(proc.stderr or "", self.max_output_bytes),
        )
        if check and result.returncode != 0:
            logger.debug(f"Command failed ({result.returncode}): {result.stderr.strip()}")
            raise ExecutionError(result.returncode, result.stderr, argv)
        return result

    def succeeds(self, command: Command | Sequence[str], timeout: float | None = None) -> bool:
        """True if the command exits 0. For existence checks.

        Timeouts and spawn failures still raise: "could not tell" is not
        the same answer as "no".
        """
        return self.execute(command, check=False, timeout=timeout).returncode == 0

    def execute_as_user(
        self,
        argv: Sequence[str],
        as_user: str,
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run a command as another Unix user with fresh group memberships."""
        return self.execute(
            build_run_as_user(build_composite([argv]), as_user),
            check=check,
            timeout=timeout,
        )


# =============================================================================
# Impersonation helpers
# =============================================================================


def build_run_as_user(shell_command: str, as_user: str) -> list[str]:
    """Wrap a shell command so it runs as ``as_user``.

    ``sudo -u`` calls initgroups(), so the target user gets group
    memberships read fresh from /etc/group. ``-n`` never prompts.
    """
    require_username(as_user, "as_user")
    return ["sudo", "-n", "-u", as_user, "bash", "-c", shell_command]


def build_spawn_args(
    command: str,
    args: Sequence[str] = (),
    as_user: str | None = None,
    env: dict[str, str] | None = None,
) -> tuple[str, list[str]]:
    """Build (program, args) for spawning a long-running process.

    Without ``as_user`` the command is returned untouched and the caller
    passes ``env`` to the spawn call itself. With ``as_user`` the
    environment is injected through an ``env K=V`` prefix, because sudo
    starts the inner command with a fresh environment.
    """
    if not as_user:
        return command, list(args)

    inner: list[str] = []
    if env:
        for key in env:
            if not _ENV_KEY.match(key):
                raise ValidationError("environment variable name", key, "must match [A-Za-z_][A-Za-z0-9_]*")
        inner.append("env")
        inner.extend(f"{key}={value}" for key, value in env.items())
    inner.append(command)
    inner.extend(args)

    argv = build_run_as_user(build_composite([inner]), as_user)
    return argv[0], argv[1:]
