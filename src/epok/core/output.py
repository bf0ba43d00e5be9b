"""Output and logging utilities using Rich for console output.

Provides:
- Colored, timestamped log lines
- Verbosity level control (also from EPOK_LOG_LEVEL)
- Key/value context fields (fingerprint, instruction, cause)
- Dry-run mode indicators
- Summary panels for teardown
"""

import os
from datetime import datetime
from enum import IntEnum
from typing import Any, Optional

from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel


LOG_LEVEL_ENV = "EPOK_LOG_LEVEL"


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors and warnings only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything

    @classmethod
    def from_name(cls, name: Optional[str]) -> Optional["Verbosity"]:
        """Map a log level name (error, warn, info, debug, trace) to a verbosity."""
        if not name:
            return None
        levels = {
            "error": cls.QUIET,
            "warn": cls.QUIET,
            "warning": cls.QUIET,
            "info": cls.NORMAL,
            "verbose": cls.VERBOSE,
            "debug": cls.DEBUG,
            "trace": cls.DEBUG,
        }
        return levels.get(name.strip().lower())


def format_fields(fields: dict[str, Any]) -> str:
    """Render context fields as ``key=value`` pairs, skipping empty values."""
    parts = []
    for key, value in fields.items():
        if value is None or value == "":
            continue
        text = str(value)
        if " " in text:
            text = repr(text)
        parts.append(f"{key}={text}")
    return " ".join(parts)


class Console:
    """Centralized console output with Rich integration.

    Features:
    - Color-coded log levels
    - Timestamps for long-running operation
    - Verbosity control
    - Dry-run mode awareness
    """

    def __init__(self) -> None:
        self._console = RichConsole(highlight=False)
        self._err_console = RichConsole(stderr=True, highlight=False)
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False
        self.timestamps = True

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
        timestamps: bool = True,
    ) -> None:
        """Configure console output settings."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        self.no_color = no_color
        self.timestamps = timestamps
        if no_color:
            self._console = RichConsole(highlight=False, no_color=True)
            self._err_console = RichConsole(stderr=True, highlight=False, no_color=True)

    def _line(self, tag: str, message: str, fields: dict[str, Any]) -> str:
        text = escape(message)
        if fields:
            text = f"{text} [dim]{escape(format_fields(fields))}[/dim]"
        if self.timestamps:
            stamp = datetime.now().strftime("%Y-%m-%dT%H:%M:%S")
            return f"[dim]{stamp}[/dim] {tag} {text}"
        return f"{tag} {text}"

    # Basic output methods
    def info(self, message: str, **fields: Any) -> None:
        """Print info message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(self._line("[green][INFO][/green]", message, fields))

    def success(self, message: str, **fields: Any) -> None:
        """Print success message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(self._line("[green][OK][/green]", message, fields))

    def warn(self, message: str, **fields: Any) -> None:
        """Print warning message (yellow) to stderr."""
        self._err_console.print(self._line("[yellow][WARN][/yellow]", message, fields))

    def error(self, message: str, **fields: Any) -> None:
        """Print error message (red) to stderr."""
        self._err_console.print(self._line("[red][ERROR][/red]", message, fields))

    def debug(self, message: str, **fields: Any) -> None:
        """Print debug message (cyan) - only in debug mode."""
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(self._line("[cyan][DEBUG][/cyan]", message, fields))

    def verbose(self, message: str, **fields: Any) -> None:
        """Print verbose message (dim) - only in verbose mode."""
        if self.verbosity >= Verbosity.VERBOSE:
            self._console.print(self._line("[dim][VERBOSE][/dim]", message, fields))

    def step(self, message: str, **fields: Any) -> None:
        """Print a step indicator (blue arrow)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(self._line("[blue]->[/blue]", message, fields))

    def dry_run_msg(self, message: str) -> None:
        """Print dry-run indicator (blue)."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {escape(message)}")

    def hint(self, message: str) -> None:
        """Print a helpful hint (cyan)."""
        self._err_console.print(f"[cyan]Hint:[/cyan] {escape(message)}")

    # Structured output
    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw message or Rich renderable with formatting."""
        self._console.print(message, **kwargs)

    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Print a summary panel with key-value pairs."""
        content_lines = []
        for key, value in items.items():
            if isinstance(value, bool):
                value_str = "[green]Yes[/green]" if value else "[red]No[/red]"
            else:
                value_str = escape(str(value))
            content_lines.append(f"[bold]{key}:[/bold] {value_str}")

        content = "\n".join(content_lines)
        self._console.print(Panel(content, title=title, border_style="blue"))


def verbosity_from_env(default: int = Verbosity.NORMAL) -> int:
    """Read the verbosity from EPOK_LOG_LEVEL, falling back to default."""
    level = Verbosity.from_name(os.environ.get(LOG_LEVEL_ENV))
    return default if level is None else int(level)


# Global console instance
console = Console()
