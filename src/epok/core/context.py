"""Execution context for commands.

The ExecutionContext holds the runtime flags that affect how a pass is
executed. It is passed to the executor, the live-state reader and the
reconciliation loop.
"""

from dataclasses import dataclass, field
from typing import Optional

from epok.core.output import Console, console, Verbosity, verbosity_from_env


@dataclass
class ExecutionContext:
    """Execution context passed to all services.

    Attributes:
        dry_run: If True, log mutations without executing them
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
    """

    dry_run: bool = False
    verbosity: int = 1
    no_color: bool = False

    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        """Configure console after initialization."""
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def console(self) -> Console:
        """Get console for output."""
        return self._console

    @property
    def is_verbose(self) -> bool:
        return self.verbosity >= Verbosity.VERBOSE

    @property
    def is_debug(self) -> bool:
        return self.verbosity >= Verbosity.DEBUG


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    log_level: Optional[str] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    An explicit -v/-q wins over EPOK_LOG_LEVEL; the environment is only
    consulted when neither flag is given.

    Args:
        dry_run: Log mutations without executing
        verbose: Increase verbosity (can be repeated)
        quiet: Only show warnings and errors
        no_color: Disable colored output
        log_level: Level name overriding EPOK_LOG_LEVEL

    Returns:
        Configured execution context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    elif verbose:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)
    else:
        level = Verbosity.from_name(log_level)
        verbosity = int(level) if level is not None else verbosity_from_env()

    return ExecutionContext(
        dry_run=dry_run,
        verbosity=verbosity,
        no_color=no_color,
    )
