"""Reconciliation: one pass, and the debounced loop that schedules passes.

A pass builds the desired ruleset from the cluster state, reads the live
ruleset, diffs by fingerprint and applies the resulting commands in batches.
The loop runs on a single thread: passes never overlap and events arriving
during a pass wait in the queue for the next one.
"""

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from epok.core.config import OperatorConfig
from epok.core.context import ExecutionContext
from epok.core.exceptions import ExecutionError
from epok.core.executor import Executor, RetryPolicy
from epok.services.batch import Batch, make_batches
from epok.services.diff import Command, Diff, compute_diff, plan_commands, teardown_diff
from epok.services.iptables import IptablesService
from epok.services.rules import DesiredRule, RuleSet, build_desired
from epok.services.state import ClusterState, ResourceEvent


# upper bound on a queue wait, so a stop request is noticed promptly
IDLE_WAKEUP_SECONDS = 1.0


class LoopState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RECONCILING = "reconciling"
    APPLYING = "applying"


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""
    added: int = 0
    removed: int = 0
    batches: int = 0
    applied_batches: int = 0
    error: Optional[ExecutionError] = None
    failed_batch: Optional[Batch] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class Applier:
    """Executes command batches in order, each with retry."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: Executor,
        *,
        batch_size: int,
        batching: bool = True,
        policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.batch_size = batch_size
        self.batching = batching
        self.policy = policy
        self.sleep = sleep

    def _on_retry(self, batch: Batch) -> Callable[[int, ExecutionError, float], None]:
        def report(attempt: int, error: ExecutionError, delay: float) -> None:
            self.ctx.console.warn(
                "Batch failed, retrying",
                attempt=f"{attempt}/{self.policy.max_attempts}",
                commands=len(batch),
                cause=error.message,
                retry_in=f"{delay:.1f}s",
            )
        return report

    def apply(self, commands: list[Command], result: Optional[PassResult] = None) -> PassResult:
        """Run commands batch by batch; stop at the first exhausted batch."""
        result = result or PassResult()
        batches = make_batches(commands, self.batch_size, enabled=self.batching)
        result.batches = len(batches)

        for index, batch in enumerate(batches, 1):
            try:
                self.policy.call(
                    lambda: self.executor.run(
                        batch.script,
                        description=f"Applying batch {index}/{len(batches)} "
                                    f"({len(batch)} commands)",
                    ),
                    sleep=self.sleep,
                    on_retry=self._on_retry(batch),
                )
            except ExecutionError as e:
                self.ctx.console.error(
                    "Batch failed, giving up until the next pass",
                    batch=f"{index}/{len(batches)}",
                    fingerprints=",".join(batch.fingerprints),
                    cause=e.message,
                )
                self.ctx.console.debug("Failed instructions", script=batch.script[:2000])
                result.error = e
                result.failed_batch = batch
                return result
            result.applied_batches += 1

        return result


class Reconciler:
    """Computes and applies the difference between desired and live rules."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: Executor,
        config: OperatorConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        self.config = config
        self.policy = RetryPolicy.from_config(config.tuning.retry)
        self.sleep = sleep
        self.iptables = IptablesService(ctx, executor, use_sudo=config.use_sudo)
        self.applier = Applier(
            ctx,
            executor,
            batch_size=config.batch.size,
            batching=config.batch.enabled,
            policy=self.policy,
            sleep=sleep,
        )

    def desired(self, cluster: ClusterState) -> RuleSet[DesiredRule]:
        return build_desired(
            cluster.nodes,
            cluster.services,
            self.config.interfaces,
            self.config.external_interface,
            console=self.ctx.console,
        )

    def diff(self, cluster: ClusterState) -> Diff:
        """Diff the desired rules against a fresh read of the live table.

        Raises:
            ExecutionError: If the live table cannot be read after retries
        """
        desired = self.desired(cluster)
        live = self.policy.call(self.iptables.read_live, sleep=self.sleep)
        return compute_diff(desired, live)

    def reconcile(
        self,
        cluster: ClusterState,
        *,
        on_apply: Optional[Callable[[], None]] = None,
    ) -> PassResult:
        """Run one pass. Failures are reported in the result, not raised."""
        try:
            diff = self.diff(cluster)
        except ExecutionError as e:
            self.ctx.console.error("Cannot read live rules", cause=e.message)
            return PassResult(error=e)

        if diff.empty:
            self.ctx.console.debug("Rules in sync")
            return PassResult()

        self.ctx.console.info(
            "Applying rule changes",
            add=len(diff.to_add),
            remove=len(diff.to_remove),
        )
        for rule in diff.to_remove:
            self.ctx.console.verbose("Remove", fingerprint=rule.fingerprint or "-", rule=rule.raw)
        for rule in diff.to_add:
            self.ctx.console.verbose("Add", fingerprint=rule.fingerprint, rule=str(rule))

        if on_apply is not None:
            on_apply()
        commands = plan_commands(diff, self.iptables, self.config.tuning.ordering)
        return self.applier.apply(
            commands,
            PassResult(added=len(diff.to_add), removed=len(diff.to_remove)),
        )


def teardown(
    ctx: ExecutionContext,
    iptables: IptablesService,
    applier: Applier,
) -> PassResult:
    """Remove every tagged rule from the live table.

    Raises:
        ExecutionError: If the live table cannot be read after retries
    """
    live = applier.policy.call(iptables.read_live, sleep=applier.sleep)
    diff = teardown_diff(live)
    if diff.empty:
        ctx.console.info("No epok rules installed")
        return PassResult()

    ctx.console.info("Removing epok rules", remove=len(diff.to_remove))
    commands = plan_commands(diff, iptables)
    return applier.apply(commands, PassResult(removed=len(diff.to_remove)))


class Debouncer:
    """Quiet-period timer: every push restarts the countdown."""

    def __init__(self, quiet_period: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.quiet_period = quiet_period
        self.clock = clock
        self.pending = 0
        self._deadline: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._deadline is not None

    def push(self) -> None:
        self.pending += 1
        self._deadline = self.clock() + self.quiet_period

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self.clock())

    def ready(self) -> bool:
        return self._deadline is not None and self.clock() >= self._deadline

    def drain(self) -> int:
        """Reset the timer; returns how many pushes it absorbed."""
        count = self.pending
        self.pending = 0
        self._deadline = None
        return count


@dataclass
class LoopStats:
    passes: int = 0
    failed_passes: int = 0
    events: int = 0
    last_result: Optional[PassResult] = field(default=None, repr=False)


class ReconciliationLoop:
    """Debounced, single-threaded scheduler of reconciliation passes.

    Triggers are cluster changes (after the quiet period) and a periodic
    resync that also repairs rules changed behind epok's back.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        cluster: ClusterState,
        events: "queue.Queue[ResourceEvent]",
        *,
        debounce_seconds: float,
        resync_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reconciler = reconciler
        self.cluster = cluster
        self.events = events
        self.resync_seconds = resync_seconds
        self.clock = clock
        self.console = reconciler.ctx.console
        self.debouncer = Debouncer(debounce_seconds, clock)
        self.state = LoopState.IDLE
        self.stats = LoopStats()
        self._next_resync = self._resync_deadline()

    def _resync_deadline(self) -> Optional[float]:
        if self.resync_seconds <= 0:
            return None
        return self.clock() + self.resync_seconds

    def _set_state(self, state: LoopState) -> None:
        if state != self.state:
            self.console.debug("Loop state", state=state.value)
        self.state = state

    def handle(self, event: ResourceEvent) -> bool:
        """Fold an event into the cluster state; changes restart the quiet period."""
        self.stats.events += 1
        changed = self.cluster.apply(event)
        self.console.debug("Event", event=str(event), changed=changed)
        if changed:
            self.debouncer.push()
            self._set_state(LoopState.DEBOUNCING)
        return changed

    def request_pass(self) -> None:
        """Schedule a pass after the quiet period, even without changes."""
        self.debouncer.push()
        self._set_state(LoopState.DEBOUNCING)

    def resync_due(self) -> bool:
        return self._next_resync is not None and self.clock() >= self._next_resync

    def due(self) -> bool:
        return self.debouncer.ready() or self.resync_due()

    def timeout(self) -> float:
        """Seconds until the next deadline, bounded by the idle wakeup."""
        waits = [IDLE_WAKEUP_SECONDS]
        remaining = self.debouncer.remaining()
        if remaining is not None:
            waits.append(remaining)
        if self._next_resync is not None:
            waits.append(max(0.0, self._next_resync - self.clock()))
        return min(waits)

    def run_pass(self) -> PassResult:
        """Run one pass now and return to IDLE."""
        coalesced = self.debouncer.drain()
        reason = "changes" if coalesced else "resync"
        self.console.verbose("Reconciling", reason=reason, events=coalesced)

        self._set_state(LoopState.RECONCILING)
        try:
            result = self.reconciler.reconcile(
                self.cluster,
                on_apply=lambda: self._set_state(LoopState.APPLYING),
            )
        finally:
            self._next_resync = self._resync_deadline()
            self._set_state(LoopState.IDLE)

        self.stats.passes += 1
        self.stats.last_result = result
        if not result.success:
            self.stats.failed_passes += 1
            self.console.warn("Pass failed, will retry on the next trigger")
        elif result.changed:
            self.console.success(
                "Rules updated",
                added=result.added,
                removed=result.removed,
                batches=result.batches,
            )
        return result

    def poll(self) -> Optional[PassResult]:
        """Run a pass if the debounce or resync deadline has passed."""
        if self.due():
            return self.run_pass()
        return None

    def _drain_queue(self, first: ResourceEvent) -> None:
        self.handle(first)
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return
            self.handle(event)

    def run(self, stop: threading.Event) -> None:
        """Process events until stop is set; a running pass is finished first."""
        self.console.info(
            "Reconciliation loop started",
            debounce=f"{self.debouncer.quiet_period}s",
            resync=f"{self.resync_seconds}s" if self.resync_seconds > 0 else "off",
        )
        # the live table may hold rules left over from a previous run
        self.request_pass()
        while not stop.is_set():
            try:
                event = self.events.get(timeout=self.timeout())
            except queue.Empty:
                event = None
            if event is not None:
                self._drain_queue(event)
            if stop.is_set():
                break
            self.poll()
        self.console.info("Reconciliation loop stopped", passes=self.stats.passes)
