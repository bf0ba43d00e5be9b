"""Diff engine: desired vs. live rules into an ordered command list."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from epok.core.config import Ordering
from epok.services.iptables import IptablesService, LiveRule, LiveState
from epok.services.rules import DesiredRule, RuleSet


class CommandKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class Command:
    """One idempotent shell instruction for one rule."""
    kind: CommandKind
    rule: Union[DesiredRule, LiveRule]
    instruction: str

    @property
    def fingerprint(self) -> str:
        return self.rule.fingerprint

    @property
    def size(self) -> int:
        """UTF-8 byte length of the instruction."""
        return len(self.instruction.encode("utf-8"))


@dataclass
class Diff:
    """Rules to add and to remove for one pass.

    ``reordered`` holds fingerprints of installed rules that are removed only
    to be appended again behind a missing or misplaced pool member.
    """
    to_add: list[DesiredRule] = field(default_factory=list)
    to_remove: list[LiveRule] = field(default_factory=list)
    reordered: set[str] = field(default_factory=set)

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove

    def __str__(self) -> str:
        return f"+{len(self.to_add)} -{len(self.to_remove)}"


def _misplaced(desired: RuleSet[DesiredRule], live: LiveState) -> set[str]:
    """Installed pool members that sit out of their desired chain position.

    Pool rules only balance correctly in chain order: the last one matches
    unconditionally and shadows anything appended after it. For each match
    group, installed rules beyond the longest correctly ordered prefix have
    to be removed and appended again. A duplicated member ends the prefix
    too, since deleting the duplicate removes the first copy in the chain.
    """
    groups: dict[tuple, list[str]] = {}
    group_of: dict[str, tuple] = {}
    for rule in desired:
        groups.setdefault(rule.match_key, []).append(rule.fingerprint)
        group_of[rule.fingerprint] = rule.match_key

    installed: dict[tuple, list[str]] = {}
    for rule in live.rules:
        key = group_of.get(rule.fingerprint)
        if key is not None:
            installed.setdefault(key, []).append(rule.fingerprint)

    bounds: dict[tuple, int] = {}
    for stray in live.strays:
        key = group_of.get(stray.fingerprint)
        if key is not None:
            index = groups[key].index(stray.fingerprint)
            bounds[key] = min(bounds.get(key, index), index)

    misplaced: set[str] = set()
    for key, present in installed.items():
        wanted = groups[key]
        limit = min(len(present), bounds.get(key, len(present)))
        keep = 0
        while keep < limit and present[keep] == wanted[keep]:
            keep += 1
        misplaced.update(present[keep:])
    return misplaced


def compute_diff(desired: RuleSet[DesiredRule], live: LiveState) -> Diff:
    """Compare by fingerprint and by position within each pool.

    Removals list strays first, then live rules no longer desired or out of
    order, in live order. Additions keep desired order, so a reordered tail
    is appended back in sequence.
    """
    misplaced = _misplaced(desired, live)
    to_remove = list(live.strays) + [
        rule for rule in live.rules
        if rule.fingerprint not in desired or rule.fingerprint in misplaced
    ]
    to_add = [
        rule for rule in desired
        if rule.fingerprint not in live.rules or rule.fingerprint in misplaced
    ]
    return Diff(to_add=to_add, to_remove=to_remove, reordered=misplaced)


def teardown_diff(live: LiveState) -> Diff:
    """Remove every tagged rule."""
    return compute_diff(RuleSet(), live)


def plan_commands(
    diff: Diff,
    iptables: IptablesService,
    ordering: Ordering = Ordering.REMOVE_FIRST,
) -> list[Command]:
    """Render a diff into instructions, ordered as configured.

    With add-first ordering, removals of reordered rules still run before
    the additions: their check-then-append would otherwise be a no-op.
    """
    removals = [
        Command(CommandKind.REMOVE, rule, iptables.remove_instruction(rule))
        for rule in diff.to_remove
    ]
    additions = [
        Command(CommandKind.ADD, rule, iptables.add_instruction(rule))
        for rule in diff.to_add
    ]
    if ordering == Ordering.ADD_FIRST:
        moved = [c for c in removals if c.fingerprint in diff.reordered]
        stale = [c for c in removals if c.fingerprint not in diff.reordered]
        return moved + additions + stale
    return removals + additions
