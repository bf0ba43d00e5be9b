"""Command execution transports with retry support.

Provides:
- LocalExecutor: runs shell scripts on this host via ``sh -c``
- SshExecutor: runs the same scripts on a remote host via ``ssh``
- RetryPolicy: exponential backoff around any executor call
- Dry-run mode support (mutating scripts are logged, not executed)

Both transports expose the same ``run(script, mutating=...)`` capability and
share the process handling in ``_execute``; callers never depend on which
transport they hold.
"""

import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, TypeVar

from epok.core.config import DEFAULT_COMMAND_TIMEOUT, RetryConfig, SshConfig
from epok.core.context import ExecutionContext
from epok.core.exceptions import (
    CommandError,
    ConfigurationError,
    ExecutionError,
    MalformedCommandError,
    TransportError,
)


# iptables exits with 2 on a parameter problem
PARAMETER_PROBLEM_EXIT = 2
# ssh exits with 255 when the connection itself fails
SSH_FAILURE_EXIT = 255
SSH_CONNECT_TIMEOUT = 10

T = TypeVar("T")


@dataclass
class CommandResult:
    """Result of a script execution."""
    command: str
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if the script succeeded."""
        return self.return_code == 0


class Executor(Protocol):
    """Capability shared by all transports."""

    name: str

    def run(
        self,
        script: str,
        *,
        mutating: bool = True,
        description: Optional[str] = None,
    ) -> CommandResult:
        ...

    def describe(self) -> str:
        ...


def check_script(script: str) -> None:
    """Reject scripts that can never succeed.

    Raises:
        MalformedCommandError: If the script is empty or not a single line
    """
    if not script or not script.strip():
        raise MalformedCommandError("Refusing to run an empty script")
    if "\x00" in script or "\n" in script or "\r" in script:
        raise MalformedCommandError(
            "Script contains control characters",
            command=script[:200],
            hint="Instructions must be a single shell line",
        )


def _execute(
    ctx: ExecutionContext,
    argv: list[str],
    script: str,
    *,
    transport: str,
    timeout: Optional[float],
    mutating: bool,
    description: Optional[str],
) -> CommandResult:
    """Run argv and map failures to the executor error classes."""
    check_script(script)

    if description:
        ctx.console.verbose(description)
    ctx.console.debug("Running command", transport=transport, command=script[:500])

    if ctx.dry_run and mutating:
        ctx.console.dry_run_msg(f"Run ({transport}): {script}")
        return CommandResult(command=script, return_code=0, stdout="", stderr="")

    try:
        result = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise TransportError(
            f"Command timed out after {timeout}s ({transport})",
            command=script,
        ) from e
    except OSError as e:
        raise TransportError(
            f"Could not start {argv[0]} ({transport})",
            command=script,
            details=[str(e)],
            hint=f"Check that {argv[0]} is installed and on PATH",
        ) from e

    cmd_result = CommandResult(
        command=script,
        return_code=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )
    if cmd_result.success:
        return cmd_result

    if result.returncode == PARAMETER_PROBLEM_EXIT:
        raise MalformedCommandError(
            f"Instruction rejected as malformed ({transport})",
            command=script,
            return_code=result.returncode,
            stderr=result.stderr,
        )
    raise CommandError(
        f"Command failed: {description or 'script'} ({transport})",
        command=script,
        return_code=result.returncode,
        stderr=result.stderr,
    )


class LocalExecutor:
    """Run scripts directly on this host."""

    name = "local"

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.ctx = ctx
        self.timeout = timeout

    def run(
        self,
        script: str,
        *,
        mutating: bool = True,
        description: Optional[str] = None,
    ) -> CommandResult:
        """Execute a shell script with ``sh -c``.

        Raises:
            TransportError: If sh cannot be spawned or times out
            CommandError: If the script exits non-zero
            MalformedCommandError: If the script is rejected as malformed
        """
        return _execute(
            self.ctx,
            ["sh", "-c", script],
            script,
            transport=self.name,
            timeout=self.timeout,
            mutating=mutating,
            description=description,
        )

    def describe(self) -> str:
        return "local shell"


class SshExecutor:
    """Run scripts on a remote host over SSH with a private key."""

    name = "ssh"

    def __init__(
        self,
        ctx: ExecutionContext,
        config: SshConfig,
        *,
        timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        """Initialize the SSH transport.

        Args:
            ctx: Execution context
            config: Target host, port and key
            timeout: Per-command timeout in seconds

        Raises:
            ConfigurationError: If the key file does not exist
        """
        key = Path(config.key_path).expanduser()
        if not key.is_file():
            raise ConfigurationError(
                f"SSH key not found: {key}",
                hint="Pass an existing private key with --key or EPOK_SSH_KEY",
            )
        self.ctx = ctx
        self.config = config
        self.key_path = key
        self.timeout = timeout

    def argv(self, script: str) -> list[str]:
        """Build the ssh command line for a script."""
        return [
            "ssh",
            "-p", str(self.config.port),
            "-i", str(self.key_path),
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
            "-o", "StrictHostKeyChecking=accept-new",
            self.config.host,
            script,
        ]

    def run(
        self,
        script: str,
        *,
        mutating: bool = True,
        description: Optional[str] = None,
    ) -> CommandResult:
        """Execute a shell script on the remote host.

        Raises:
            TransportError: If ssh cannot connect (exit 255) or times out
            CommandError: If the remote script exits non-zero
            MalformedCommandError: If the script is rejected as malformed
        """
        try:
            return _execute(
                self.ctx,
                self.argv(script),
                script,
                transport=self.name,
                timeout=self.timeout,
                mutating=mutating,
                description=description,
            )
        except CommandError as e:
            if e.return_code != SSH_FAILURE_EXIT:
                raise
            raise TransportError(
                f"SSH connection to {self.config.host} failed",
                command=script,
                return_code=e.return_code,
                stderr=e.stderr,
                hint=f"Check that {self.config.host}:{self.config.port} is reachable "
                     "and accepts the key",
            ) from e

    def describe(self) -> str:
        return shlex.join(["ssh", "-p", str(self.config.port), self.config.host])


def create_executor(
    ctx: ExecutionContext,
    ssh: Optional[SshConfig] = None,
    *,
    timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
) -> Executor:
    """Pick the transport: SSH when a target is configured, local otherwise."""
    if ssh is not None:
        return SshExecutor(ctx, ssh, timeout=timeout)
    return LocalExecutor(ctx, timeout=timeout)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    The n-th retry waits ``base_delay * multiplier ** (n - 1)`` seconds,
    capped at ``max_delay``. ``max_attempts`` counts the first try.
    """
    max_attempts: int = 5
    base_delay: float = 0.8
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delays(self) -> list[float]:
        """All waits the policy can produce, in order."""
        return [self.delay(attempt) for attempt in range(1, self.max_attempts)]

    def call(
        self,
        fn: Callable[[], T],
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, ExecutionError, float], None]] = None,
    ) -> T:
        """Call fn, retrying retryable ExecutionErrors.

        Args:
            fn: Zero-argument callable to run
            sleep: Wait function (injectable for tests)
            on_retry: Called with (attempt, error, delay) before each wait

        Returns:
            Whatever fn returns

        Raises:
            ExecutionError: The last error once attempts are exhausted, or
                immediately for non-retryable errors
        """
        attempt = 1
        while True:
            try:
                return fn()
            except ExecutionError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                wait = self.delay(attempt)
                if on_retry is not None:
                    on_retry(attempt, e, wait)
                sleep(wait)
                attempt += 1
