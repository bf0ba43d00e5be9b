"""iptables rendering and live-state reading.

Rules are rendered in the canonical order ``iptables-save`` prints them, so a
rule epok installs reads back token for token. Only rules tagged with an
``epok_rule_id`` comment are considered; everything else in the nat table
belongs to someone else and is never touched.
"""

import re
import shlex
from dataclasses import dataclass, field
from typing import Optional

from epok.core.context import ExecutionContext
from epok.core.exceptions import ParseError
from epok.core.executor import Executor
from epok.core.output import Console, console as default_console
from epok.services.annotations import Protocol
from epok.services.rules import FINGERPRINT_LENGTH, DesiredRule, RuleSet


CHAIN = "PREROUTING"
TABLE = "nat"
RULE_MARKER = "epok_rule_id"
SERVICE_MARKER = "epok_service"

_FINGERPRINT_RE = re.compile(rf"^[0-9a-f]{{{FINGERPRINT_LENGTH}}}$")


def iptables_prefix(use_sudo: bool = True) -> list[str]:
    """``[sudo] iptables -w -t nat``; -w waits for the xtables lock."""
    prefix = ["sudo"] if use_sudo else []
    return prefix + ["iptables", "-w", "-t", TABLE]


def format_probability(value: float) -> str:
    return f"{value:.11f}"


def rule_comment(rule: DesiredRule) -> str:
    comment = f"{RULE_MARKER}={rule.fingerprint}"
    if rule.service:
        comment += f";{SERVICE_MARKER}={rule.service}"
    return comment


def rule_spec(rule: DesiredRule) -> list[str]:
    """Rule arguments after the chain name, in iptables-save order."""
    proto = rule.protocol.value
    args: list[str] = []
    if rule.allow_range:
        args += ["-s", rule.allow_range]
    args += ["-i", rule.interface, "-p", proto, "-m", proto, "--dport", str(rule.external_port)]

    probability = rule.probability
    if probability is not None:
        args += ["-m", "statistic", "--mode", "random",
                 "--probability", format_probability(probability)]

    args += ["-m", "comment", "--comment", rule_comment(rule)]
    args += ["-j", "DNAT", "--to-destination", f"{rule.node_address}:{rule.node_port}"]
    return args


def quote_save_token(token: str) -> str:
    # iptables-save double-quotes values containing anything but [\w./:-]
    if re.fullmatch(r"[\w./:-]+", token):
        return token
    return '"' + token.replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_save_line(rule: DesiredRule) -> str:
    """Render a rule the way ``iptables-save`` lists it."""
    return " ".join(["-A", CHAIN] + [quote_save_token(token) for token in rule_spec(rule)])


@dataclass(frozen=True)
class LiveRule:
    """A tagged rule found in the live nat table.

    ``tokens`` holds the rule arguments after the chain name, exactly as
    listed, and is what removal replays. Fields that could not be read from
    the line are None.
    """
    fingerprint: str
    raw: str
    tokens: tuple[str, ...] = field(default=(), repr=False)
    interface: Optional[str] = None
    external_port: Optional[int] = None
    protocol: Optional[Protocol] = None
    node_address: Optional[str] = None
    node_port: Optional[int] = None
    allow_range: Optional[str] = None
    probability: Optional[float] = None
    service: Optional[str] = None

    def __str__(self) -> str:
        return self.raw


def _parse_comment(comment: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for part in comment.split(";"):
        key, sep, value = part.partition("=")
        if sep:
            tags[key.strip()] = value.strip()
    return tags


def _parse_destination(value: str) -> tuple[str, int]:
    address, sep, port = value.rpartition(":")
    if not sep or not address:
        raise ParseError(f"Malformed DNAT destination: {value!r}", value=value)
    try:
        return address, int(port)
    except ValueError:
        raise ParseError(f"Malformed DNAT port: {value!r}", value=value)


def parse_live_rule(line: str) -> LiveRule:
    """Reconstruct a LiveRule from one iptables-save line.

    Raises:
        ParseError: If the line cannot be tokenized, is not a PREROUTING
            append, or carries no well-formed fingerprint tag
    """
    try:
        tokens = shlex.split(line)
    except ValueError as e:
        raise ParseError(f"Cannot tokenize rule: {e}", value=line)

    if tokens[:2] != ["-A", CHAIN]:
        raise ParseError(f"Not a {CHAIN} rule", value=line)

    spec = tokens[2:]
    options: dict[str, str] = {}
    for index, token in enumerate(spec[:-1]):
        if token.startswith("-") and not spec[index + 1].startswith("-"):
            options.setdefault(token, spec[index + 1])

    tags = _parse_comment(options.get("--comment", ""))
    fingerprint = tags.get(RULE_MARKER, "")
    if not _FINGERPRINT_RE.match(fingerprint):
        raise ParseError(f"Malformed {RULE_MARKER} tag", value=line)

    protocol = None
    if "-p" in options:
        try:
            protocol = Protocol(options["-p"].lower())
        except ValueError:
            protocol = None

    node_address, node_port = None, None
    if "--to-destination" in options:
        node_address, node_port = _parse_destination(options["--to-destination"])

    external_port = None
    if "--dport" in options and options["--dport"].isdigit():
        external_port = int(options["--dport"])

    probability = None
    if "--probability" in options:
        try:
            probability = float(options["--probability"])
        except ValueError:
            probability = None

    return LiveRule(
        fingerprint=fingerprint,
        raw=line,
        tokens=tuple(spec),
        interface=options.get("-i"),
        external_port=external_port,
        protocol=protocol,
        node_address=node_address,
        node_port=node_port,
        allow_range=options.get("-s"),
        probability=probability,
        service=tags.get(SERVICE_MARKER),
    )


@dataclass
class LiveState:
    """Tagged rules in the live table, plus strays that must go."""
    rules: RuleSet[LiveRule] = field(default_factory=RuleSet)
    strays: list[LiveRule] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rules) + len(self.strays)


def parse_live_state(output: str, *, console: Console = default_console) -> LiveState:
    """Parse ``iptables-save -t nat`` output into a LiveState.

    A tagged line with a malformed tag, or repeating a fingerprint already
    seen, becomes a stray. A tagged line that cannot even be tokenized is
    reported and left alone.
    """
    state = LiveState()
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith(f"-A {CHAIN} ") or RULE_MARKER not in line:
            continue

        try:
            rule = parse_live_rule(line)
        except ParseError as e:
            try:
                tokens = tuple(shlex.split(line)[2:])
            except ValueError:
                console.warn("Cannot tokenize tagged rule, leaving it in place", rule=line)
                continue
            console.warn("Tagged rule is malformed, scheduling removal",
                         rule=line, cause=e.message)
            state.strays.append(LiveRule(fingerprint="", raw=line, tokens=tokens))
            continue

        if not state.rules.add(rule):
            console.warn("Duplicate rule fingerprint, scheduling removal",
                         fingerprint=rule.fingerprint)
            state.strays.append(rule)

    return state


class IptablesService:
    """Reads the nat table and renders idempotent rule instructions."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: Executor,
        *,
        use_sudo: bool = True,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.use_sudo = use_sudo

    @property
    def prefix(self) -> list[str]:
        return iptables_prefix(self.use_sudo)

    def save_command(self) -> str:
        prefix = ["sudo"] if self.use_sudo else []
        return shlex.join(prefix + ["iptables-save", "-t", TABLE])

    def read_live(self) -> LiveState:
        """Read the tagged rules currently installed.

        Raises:
            ExecutionError: If iptables-save cannot be run
        """
        result = self.executor.run(
            self.save_command(),
            mutating=False,
            description="Reading live nat table",
        )
        state = parse_live_state(result.stdout, console=self.ctx.console)
        self.ctx.console.debug(
            "Live ruleset read",
            rules=len(state.rules),
            strays=len(state.strays),
        )
        return state

    def _instruction(self, check_negated: bool, action: str, spec: list[str]) -> str:
        check = shlex.join(self.prefix + ["-C", CHAIN] + spec)
        apply = shlex.join(self.prefix + [action, CHAIN] + spec)
        if check_negated:
            return f"(! {check} || {apply})"
        return f"({check} || {apply})"

    def add_instruction(self, rule: DesiredRule) -> str:
        """Append the rule unless an identical one is already installed."""
        return self._instruction(False, "-A", rule_spec(rule))

    def remove_instruction(self, rule: LiveRule) -> str:
        """Delete the rule if it is still installed."""
        return self._instruction(True, "-D", list(rule.tokens))
