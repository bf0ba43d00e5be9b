"""Custom exceptions for the epok operator.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class EpokError(Exception):
    """Base exception for all epok errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(EpokError):
    """Configuration or CLI settings errors.

    Raised when:
    - No interfaces configured
    - Invalid YAML in the tuning file
    - SSH key missing or unreadable
    - Invalid configuration values
    """
    exit_code = 2


class ParseError(EpokError):
    """Annotation parse errors.

    Raised when:
    - A port mapping has bad integers or out-of-range ports
    - A port mapping has an unknown protocol suffix
    - An allow-range is not a valid IPv4 CIDR

    Never fatal: the offending entry is skipped and logged.
    """
    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        value: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.value = value


class ExecutionError(EpokError):
    """Command execution failures on the target host.

    Raised when:
    - The transport cannot reach the host
    - A shell script returns non-zero exit code
    - A script is rejected before dispatch
    """
    exit_code = 5
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class TransportError(ExecutionError):
    """The executor could not reach the target.

    Raised when:
    - sh/ssh binary cannot be spawned
    - The command times out
    - ssh exits with 255 (connection or authentication failure)
    """
    exit_code = 21


class CommandError(ExecutionError):
    """The target rejected an instruction (non-zero exit)."""
    exit_code = 22


class MalformedCommandError(ExecutionError):
    """An instruction is malformed and retrying cannot help.

    Raised when:
    - The script is empty or contains NUL/newline characters
    - iptables reports a parameter problem (exit code 2)
    """
    exit_code = 23
    retryable = False


class StartupError(EpokError):
    """Unrecoverable startup failure.

    Raised when:
    - Kubernetes configuration cannot be loaded
    - The initial list of Services/Nodes fails
    """
    exit_code = 20
