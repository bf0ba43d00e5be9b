"""Core framework components for epok."""

from epok.core.exceptions import (
    EpokError,
    ConfigurationError,
    ParseError,
    StartupError,
    ExecutionError,
    TransportError,
    CommandError,
    MalformedCommandError,
)

from epok.core.context import ExecutionContext, create_context
from epok.core.output import console, Console, Verbosity
from epok.core.config import (
    BatchConfig,
    EpokSettings,
    OperatorConfig,
    Ordering,
    RetryConfig,
    SshConfig,
    TuningConfig,
)
from epok.core.executor import (
    CommandResult,
    Executor,
    LocalExecutor,
    RetryPolicy,
    SshExecutor,
    create_executor,
)

__all__ = [
    # Exceptions
    "EpokError",
    "ConfigurationError",
    "ParseError",
    "StartupError",
    "ExecutionError",
    "TransportError",
    "CommandError",
    "MalformedCommandError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "BatchConfig",
    "EpokSettings",
    "OperatorConfig",
    "Ordering",
    "RetryConfig",
    "SshConfig",
    "TuningConfig",
    # Executor
    "CommandResult",
    "Executor",
    "LocalExecutor",
    "RetryPolicy",
    "SshExecutor",
    "create_executor",
]
