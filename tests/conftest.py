"""Shared fixtures: an in-memory nat table and Kubernetes object factories."""

import shlex
from typing import Callable, Optional

import pytest
from kubernetes.client import (
    V1Node,
    V1NodeAddress,
    V1NodeCondition,
    V1NodeStatus,
    V1ObjectMeta,
    V1Service,
)

from epok.core.context import ExecutionContext
from epok.core.exceptions import ExecutionError
from epok.core.executor import CommandResult
from epok.services.annotations import (
    ALLOW_RANGE_ANNOTATION,
    EXTERNAL_PORTS_ANNOTATION,
    INTERNAL_ANNOTATION,
    NODE_EXCLUDE_ANNOTATION,
    NODE_EXCLUDE_LABEL,
)
from epok.services.iptables import CHAIN, quote_save_token


class FakeExecutor:
    """Executor double that interprets epok instructions against a fake table.

    ``table`` holds rule specs (the arguments after the chain name). Errors
    queued in ``failures`` are raised by the next calls, one per call;
    ``mutation_failures`` only hit mutating calls.
    """

    name = "fake"

    def __init__(self, table: Optional[list[list[str]]] = None) -> None:
        self.table: list[list[str]] = [list(spec) for spec in table or []]
        self.scripts: list[str] = []
        self.reads = 0
        self.failures: list[ExecutionError] = []
        self.mutation_failures: list[ExecutionError] = []
        self.foreign: list[str] = []

    def describe(self) -> str:
        return "fake table"

    def save_output(self) -> str:
        lines = ["*nat", f":{CHAIN} ACCEPT [0:0]"]
        lines += self.foreign
        for spec in self.table:
            lines.append(" ".join(["-A", CHAIN] + [quote_save_token(t) for t in spec]))
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    def add_line(self, line: str) -> None:
        """Add a raw iptables-save line as if installed by hand."""
        self.table.append(shlex.split(line)[2:])

    def _apply_instruction(self, instruction: str) -> None:
        body = instruction.strip()
        assert body.startswith("(") and body.endswith(")"), instruction
        _check, action = body[1:-1].split(" || ")
        tokens = shlex.split(action)
        index = next(i for i, t in enumerate(tokens) if t in ("-A", "-D"))
        spec = tokens[index + 2:]
        if tokens[index] == "-A":
            if spec not in self.table:
                self.table.append(spec)
        elif spec in self.table:
            self.table.remove(spec)

    def run(self, script: str, *, mutating: bool = True,
            description: Optional[str] = None) -> CommandResult:
        if self.failures:
            raise self.failures.pop(0)
        if not mutating:
            self.reads += 1
            return CommandResult(command=script, return_code=0,
                                 stdout=self.save_output(), stderr="")
        if self.mutation_failures:
            raise self.mutation_failures.pop(0)
        self.scripts.append(script)
        for instruction in script.split(" && "):
            self._apply_instruction(instruction)
        return CommandResult(command=script, return_code=0, stdout="", stderr="")


@pytest.fixture
def ctx() -> ExecutionContext:
    """Quiet execution context."""
    return ExecutionContext(verbosity=0, no_color=True)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_executor() -> Callable[..., FakeExecutor]:
    return FakeExecutor


@pytest.fixture
def make_service() -> Callable[..., V1Service]:
    """Factory for annotated V1Service objects."""
    def factory(
        name: str,
        ports: Optional[str] = None,
        *,
        namespace: str = "default",
        internal: bool = False,
        allow_range: Optional[str] = None,
    ) -> V1Service:
        annotations = {}
        if ports is not None:
            annotations[EXTERNAL_PORTS_ANNOTATION] = ports
        if internal:
            annotations[INTERNAL_ANNOTATION] = "true"
        if allow_range is not None:
            annotations[ALLOW_RANGE_ANNOTATION] = allow_range
        return V1Service(metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations or None,
            resource_version="1",
        ))
    return factory


@pytest.fixture
def make_node() -> Callable[..., V1Node]:
    """Factory for V1Node objects with one InternalIP."""
    def factory(
        name: str,
        address: Optional[str] = None,
        *,
        ready: bool = True,
        excluded: bool = False,
        exclude_label: bool = False,
    ) -> V1Node:
        annotations = {NODE_EXCLUDE_ANNOTATION: "true"} if excluded else None
        labels = {NODE_EXCLUDE_LABEL: "true"} if exclude_label else None
        addresses = [V1NodeAddress(address=address, type="InternalIP")] if address else []
        return V1Node(
            metadata=V1ObjectMeta(
                name=name,
                annotations=annotations,
                labels=labels,
                resource_version="1",
            ),
            status=V1NodeStatus(
                addresses=addresses,
                conditions=[V1NodeCondition(type="Ready", status="True" if ready else "False")],
            ),
        )
    return factory
