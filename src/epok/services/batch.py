"""Group commands into shell scripts that fit the argument size limit."""

from dataclasses import dataclass, field
from typing import Iterable

from epok.core.config import DEFAULT_BATCH_SIZE
from epok.services.diff import Command


SEPARATOR = " && "
_SEPARATOR_SIZE = len(SEPARATOR.encode("utf-8"))


@dataclass
class Batch:
    """Commands executed as one ``&&``-joined script."""
    commands: list[Command] = field(default_factory=list)

    @property
    def script(self) -> str:
        return SEPARATOR.join(command.instruction for command in self.commands)

    @property
    def size(self) -> int:
        """UTF-8 byte length of the script."""
        return len(self.script.encode("utf-8"))

    @property
    def fingerprints(self) -> list[str]:
        return [command.fingerprint for command in self.commands]

    def __len__(self) -> int:
        return len(self.commands)


def make_batches(
    commands: Iterable[Command],
    limit: int = DEFAULT_BATCH_SIZE,
    *,
    enabled: bool = True,
) -> list[Batch]:
    """Split commands into ordered batches.

    A batch grows while its script stays within ``limit`` bytes. A single
    command larger than the limit gets a batch of its own. With batching
    disabled every command is its own batch.
    """
    if not enabled:
        return [Batch([command]) for command in commands]

    batches: list[Batch] = []
    current = Batch()
    size = 0

    for command in commands:
        if current.commands and size + _SEPARATOR_SIZE + command.size > limit:
            batches.append(current)
            current = Batch()
            size = 0

        if current.commands:
            size += _SEPARATOR_SIZE
        current.commands.append(command)
        size += command.size

    if current.commands:
        batches.append(current)
    return batches
