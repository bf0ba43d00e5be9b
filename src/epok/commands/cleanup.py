"""Cleanup command: remove every rule epok installed."""

from typing import Optional

from epok.core.config import BatchConfig, SshConfig, TuningConfig
from epok.core.context import ExecutionContext
from epok.core.executor import Executor, RetryPolicy, create_executor
from epok.services.iptables import IptablesService
from epok.services.reconciler import Applier, PassResult, teardown


def run_cleanup(
    ctx: ExecutionContext,
    batch: BatchConfig,
    ssh: Optional[SshConfig] = None,
    *,
    use_sudo: bool = True,
    tuning: Optional[TuningConfig] = None,
    executor: Optional[Executor] = None,
) -> PassResult:
    """Remove all tagged rules, batched and retried like a normal pass.

    Untagged rules are left alone.

    Raises:
        ExecutionError: If the live table cannot be read or a batch keeps failing
    """
    tuning = tuning or TuningConfig()
    executor = executor or create_executor(ctx, ssh, timeout=tuning.command_timeout)
    ctx.console.step(f"Removing epok rules via {executor.describe()}")

    iptables = IptablesService(ctx, executor, use_sudo=use_sudo)
    applier = Applier(
        ctx,
        executor,
        batch_size=batch.size,
        batching=batch.enabled,
        policy=RetryPolicy.from_config(tuning.retry),
    )
    result = teardown(ctx, iptables, applier)
    if result.error is not None:
        raise result.error

    if result.removed:
        ctx.console.success("Rules removed", removed=result.removed, batches=result.batches)
        ctx.console.summary("Cleanup", {
            "Target": executor.describe(),
            "Rules removed": result.removed,
            "Batches": result.batches,
            "Dry run": ctx.dry_run,
        })
    return result
