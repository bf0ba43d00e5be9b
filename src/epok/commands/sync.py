"""Sync command: watch the cluster and keep forwarding rules in sync."""

import queue
import signal
import threading
from pathlib import Path
from typing import Optional

from kubernetes import client

from epok import __version__
from epok.core.config import OperatorConfig, SshConfig
from epok.core.context import ExecutionContext
from epok.core.executor import Executor, create_executor
from epok.services.reconciler import ReconciliationLoop, Reconciler
from epok.services.state import ClusterState, ResourceEvent
from epok.services.watcher import KubeWatcher, load_kube_config


def install_signal_handlers(ctx: ExecutionContext, stop: threading.Event) -> None:
    """Set the stop event on SIGINT/SIGTERM; the current pass still completes."""
    def handle(signum: int, _frame: object) -> None:
        ctx.console.info("Stop requested", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def run_operator(
    ctx: ExecutionContext,
    config: OperatorConfig,
    ssh: Optional[SshConfig] = None,
    *,
    kubeconfig: Optional[Path] = None,
    executor: Optional[Executor] = None,
    stop: Optional[threading.Event] = None,
) -> None:
    """Run the operator until stopped.

    Args:
        ctx: Execution context
        config: Interfaces, batching and tuning
        ssh: Remote target; rules are applied locally when None
        kubeconfig: Explicit kubeconfig instead of in-cluster credentials
        executor: Transport override (built from ssh when None)
        stop: Event that ends the loop (signal handlers set it when None)

    Raises:
        ConfigurationError: If the SSH key is missing
        StartupError: If the cluster cannot be reached
    """
    tuning = config.tuning
    executor = executor or create_executor(ctx, ssh, timeout=tuning.command_timeout)

    ctx.console.info(
        f"Starting epok {__version__}",
        target=executor.describe(),
        interfaces=",".join(config.interfaces),
        external=config.external_interface or "-",
    )
    if ctx.dry_run:
        ctx.console.warn("Dry-run mode: rule changes are logged, not applied")

    load_kube_config(kubeconfig)
    events: "queue.Queue[ResourceEvent]" = queue.Queue()
    watcher = KubeWatcher(client.CoreV1Api(), events, console=ctx.console)
    watcher.initial_sync()

    if stop is None:
        stop = threading.Event()
        install_signal_handlers(ctx, stop)

    loop = ReconciliationLoop(
        Reconciler(ctx, executor, config),
        ClusterState(console=ctx.console),
        events,
        debounce_seconds=tuning.debounce_seconds,
        resync_seconds=tuning.resync_seconds,
    )

    watcher.start(stop)
    try:
        loop.run(stop)
    finally:
        stop.set()
        watcher.stop()
    ctx.console.info("Shut down", passes=loop.stats.passes, failed=loop.stats.failed_passes)
