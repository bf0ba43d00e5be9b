"""Unit tests for command batching."""

import pytest

from epok.services.annotations import Protocol
from epok.services.batch import SEPARATOR, Batch, make_batches
from epok.services.diff import Command, CommandKind
from epok.services.rules import DesiredRule


def command(instruction, port=25):
    rule = DesiredRule("eth0", port, Protocol.TCP, "10.0.0.1", 2025)
    return Command(CommandKind.ADD, rule, instruction)


@pytest.fixture
def commands():
    return [command(f"(true {'x' * n})", port) for port, n in enumerate([10, 40, 5, 90, 20, 1], 1)]


class TestBatch:
    """Tests for Batch."""

    def test_script_joins_with_and(self):
        """Commands should be joined so the first failure stops the batch."""
        batch = Batch([command("(a)"), command("(b)")])
        assert batch.script == "(a) && (b)"
        assert batch.size == len("(a) && (b)")
        assert len(batch) == 2

    def test_size_counts_bytes(self):
        """Size should count UTF-8 bytes, not characters."""
        assert Batch([command("(é)")]).size == 4


class TestMakeBatches:
    """Tests for make_batches."""

    @pytest.mark.parametrize("limit", [1, 20, 50, 100, 1000])
    def test_concatenation_preserves_sequence(self, commands, limit):
        """Flattening the batches should give back the commands in order."""
        batches = make_batches(commands, limit)
        assert [c for b in batches for c in b.commands] == commands

    @pytest.mark.parametrize("limit", [20, 50, 100, 1000])
    def test_size_bound(self, commands, limit):
        """Every multi-command batch should fit the limit."""
        for batch in make_batches(commands, limit):
            assert len(batch) == 1 or batch.size <= limit

    def test_oversized_command_alone(self, commands):
        """A command larger than the limit should get its own batch."""
        big = commands[3]
        batches = make_batches(commands, 60)
        assert any(b.commands == [big] for b in batches)
        assert big.size > 60

    def test_greedy_packing(self):
        """Batches should fill up before a new one starts."""
        items = [command("(abc)") for _ in range(4)]
        per_two = 2 * len("(abc)") + len(SEPARATOR)
        batches = make_batches(items, per_two)
        assert [len(b) for b in batches] == [2, 2]
        assert all(b.size == per_two for b in batches)

    def test_disabled(self, commands):
        """Disabled batching should give one command per batch."""
        batches = make_batches(commands, 10_000, enabled=False)
        assert [len(b) for b in batches] == [1] * len(commands)

    def test_empty(self):
        """No commands should mean no batches."""
        assert make_batches([], 100) == []
