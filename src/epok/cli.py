"""Main CLI entry points using Typer.

This module defines two applications:
- ``epok``: watch the cluster and keep forwarding rules in sync
- ``epok-clean``: remove every rule epok installed

Both take global options in their callback and pick the transport with a
``local`` or ``ssh`` subcommand.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Callable, Optional

import typer
from rich.console import Console

from epok import __version__
from epok.commands.cleanup import run_cleanup
from epok.commands.sync import run_operator
from epok.core.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_SSH_PORT,
    BatchConfig,
    EpokSettings,
    OperatorConfig,
    SshConfig,
    TuningConfig,
)
from epok.core.context import ExecutionContext, create_context
from epok.core.exceptions import ConfigurationError, EpokError
from epok.core.output import console as app_console


app = typer.Typer(
    name="epok",
    help="Forward external ports to Kubernetes NodePorts with iptables.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)

clean_app = typer.Typer(
    name="epok-clean",
    help="Remove every forwarding rule installed by epok.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)


# Type aliases for common options
BatchCommandsOption = Annotated[
    str,
    typer.Option(
        "--batch-commands",
        envvar="EPOK_BATCH_COMMANDS",
        help="Join commands into as few shell invocations as possible (true/false).",
    ),
]

BatchSizeOption = Annotated[
    int,
    typer.Option(
        "--batch-size",
        envvar="EPOK_BATCH_SIZE",
        min=1,
        help="Maximum batch script size in bytes.",
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        envvar="EPOK_CONFIG",
        help="YAML tuning file (debounce, resync, retry, ordering).",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

NoSudoOption = Annotated[
    bool,
    typer.Option(
        "--no-sudo",
        envvar="EPOK_NO_SUDO",
        help="Run iptables without sudo (already root on the target).",
        is_flag=True,
    ),
]

DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Log rule changes without applying them.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Only show warnings and errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

SshHostOption = Annotated[
    str,
    typer.Option(
        "--host",
        "-H",
        envvar="EPOK_SSH_HOST",
        help="Target as user@host.",
    ),
]

SshKeyOption = Annotated[
    Path,
    typer.Option(
        "--key",
        "-k",
        envvar="EPOK_SSH_KEY",
        help="Private key file.",
        dir_okay=False,
    ),
]

SshPortOption = Annotated[
    int,
    typer.Option(
        "--port",
        "-p",
        envvar="EPOK_SSH_PORT",
        help="SSH port.",
    ),
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_bool(value: str) -> bool:
    """Parse a true/false option value."""
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise typer.BadParameter(f"expected true or false, got {value!r}")


@dataclass
class GlobalOptions:
    """Options given before the transport subcommand."""
    interfaces: Optional[str] = None
    external_interface: Optional[str] = None
    batch_commands: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    config: Optional[Path] = None
    no_sudo: bool = False
    dry_run: bool = False
    verbose: int = 0
    quiet: bool = False
    no_color: bool = False

    def context(self, log_level: Optional[str] = None) -> ExecutionContext:
        return create_context(
            dry_run=self.dry_run,
            verbose=self.verbose,
            quiet=self.quiet,
            no_color=self.no_color,
            log_level=log_level,
        )

    @property
    def batch(self) -> BatchConfig:
        return BatchConfig(enabled=self.batch_commands, size=self.batch_size)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"epok version {__version__}")
        raise typer.Exit()


VersionOption = Annotated[
    bool,
    typer.Option(
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
]


def handle_error(error: EpokError) -> None:
    """Handle an EpokError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def load_settings() -> EpokSettings:
    """Read EPOK_* environment settings.

    Raises:
        ConfigurationError: If a variable has an invalid value
    """
    try:
        return EpokSettings()
    except Exception as e:
        raise ConfigurationError(
            "Invalid EPOK_* environment variable",
            details=[str(e)],
        ) from e


def build_ssh_config(host: str, key: Path, port: int) -> SshConfig:
    """Validate SSH target options.

    Raises:
        ConfigurationError: If the host or port is invalid
    """
    try:
        return SshConfig(host=host, key_path=key, port=port)
    except Exception as e:
        raise ConfigurationError(
            "Invalid SSH target",
            details=[str(e)],
            hint="Use --host user@host --key <path> [--port <n>]",
        ) from e


def _options(ctx: typer.Context) -> GlobalOptions:
    return ctx.obj if isinstance(ctx.obj, GlobalOptions) else GlobalOptions()


def _register_transports(
    target: typer.Typer,
    action: Callable[[GlobalOptions, Optional[SshConfig]], None],
    verb: str,
) -> None:
    """Add the ``local`` and ``ssh`` subcommands to an application."""

    @target.command("local", help=f"{verb} on this host.")
    def local_cmd(ctx: typer.Context) -> None:
        action(_options(ctx), None)

    @target.command("ssh", help=f"{verb} on a remote host over SSH.")
    def ssh_cmd(
        ctx: typer.Context,
        host: SshHostOption,
        key: SshKeyOption,
        port: SshPortOption = DEFAULT_SSH_PORT,
    ) -> None:
        options = _options(ctx)
        try:
            ssh = build_ssh_config(host, key, port)
        except EpokError as e:
            options.context()
            handle_error(e)
        action(options, ssh)


# ============================================================================
# epok
# ============================================================================

@app.callback()
def main(
    ctx: typer.Context,
    interfaces: Annotated[
        Optional[str],
        typer.Option(
            "--interfaces",
            "-i",
            envvar="EPOK_INTERFACES",
            help="Comma-separated interfaces to forward from (required).",
        ),
    ] = None,
    external_interface: Annotated[
        Optional[str],
        typer.Option(
            "--external-interface",
            "-e",
            envvar="EPOK_EXTERNAL_INTERFACE",
            help="Public interface; internal services are not forwarded on it.",
        ),
    ] = None,
    batch_commands: BatchCommandsOption = "true",
    batch_size: BatchSizeOption = DEFAULT_BATCH_SIZE,
    config: ConfigOption = None,
    no_sudo: NoSudoOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    version: VersionOption = False,
) -> None:
    """Forward external ports to Kubernetes NodePorts with iptables.

    Services annotated with [bold]epok.getbetter.ro/externalports[/bold] get
    DNAT rules on the given interfaces, spread over all ready nodes.

    [bold]Examples:[/bold]
        epok -i eth0,eth1 local
        epok -i eth1 -e eth0 ssh -H root@gateway -k ~/.ssh/id_ed25519
    """
    ctx.obj = GlobalOptions(
        interfaces=interfaces,
        external_interface=external_interface,
        batch_commands=parse_bool(batch_commands),
        batch_size=batch_size,
        config=config,
        no_sudo=no_sudo,
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
    )


def _settings_context(options: GlobalOptions) -> tuple[EpokSettings, ExecutionContext]:
    """Read EPOK_* settings, then build the context at the configured log level."""
    try:
        settings = load_settings()
    except EpokError as e:
        options.context()
        handle_error(e)
    return settings, options.context(settings.log_level)


def sync_action(options: GlobalOptions, ssh: Optional[SshConfig]) -> None:
    settings, ctx = _settings_context(options)
    try:
        tuning = settings.apply(TuningConfig.load_or_default(options.config))
        config = OperatorConfig.build(
            interfaces=options.interfaces or "",
            external_interface=options.external_interface,
            batch=options.batch,
            use_sudo=not options.no_sudo,
            tuning=tuning,
        )
        run_operator(ctx, config, ssh, kubeconfig=settings.kubeconfig)
    except EpokError as e:
        handle_error(e)


_register_transports(app, sync_action, "Sync forwarding rules")


# ============================================================================
# epok-clean
# ============================================================================

@clean_app.callback()
def clean_main(
    ctx: typer.Context,
    batch_commands: BatchCommandsOption = "true",
    batch_size: BatchSizeOption = DEFAULT_BATCH_SIZE,
    config: ConfigOption = None,
    no_sudo: NoSudoOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    version: VersionOption = False,
) -> None:
    """Remove every forwarding rule installed by epok.

    Only rules tagged with an epok fingerprint are removed.

    [bold]Examples:[/bold]
        epok-clean local
        epok-clean --dry-run ssh -H root@gateway -k ~/.ssh/id_ed25519
    """
    ctx.obj = GlobalOptions(
        batch_commands=parse_bool(batch_commands),
        batch_size=batch_size,
        config=config,
        no_sudo=no_sudo,
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
    )


def clean_action(options: GlobalOptions, ssh: Optional[SshConfig]) -> None:
    settings, ctx = _settings_context(options)
    try:
        tuning = settings.apply(TuningConfig.load_or_default(options.config))
        run_cleanup(
            ctx,
            options.batch,
            ssh,
            use_sudo=not options.no_sudo,
            tuning=tuning,
        )
    except EpokError as e:
        handle_error(e)


_register_transports(clean_app, clean_action, "Remove forwarding rules")


# Entry point
if __name__ == "__main__":
    app()
