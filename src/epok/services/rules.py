"""Desired rules, fingerprints and the desired-state builder.

Every forwarding rule epok installs carries a fingerprint: a digest of all
fields that shape the rule. Recognizing a rule across restarts only needs the
fingerprint, so no state is persisted. A changed field means a new
fingerprint, and the old rule is removed while the new one is added.
"""

import hashlib
from dataclasses import dataclass
from typing import Generic, Iterable, Iterator, Optional, Protocol as TypingProtocol, TypeVar

from epok.core.output import Console, console as default_console
from epok.services.annotations import Node, Protocol, ServiceSpec


FINGERPRINT_LENGTH = 16


@dataclass(frozen=True)
class DesiredRule:
    """One DNAT rule epok wants installed.

    ``pool`` lists the node addresses sharing this rule's match (same
    interface, external port and protocol), in installation order. The
    rule's share of new connections follows from its position in the pool.
    ``service`` names the owning Service and does not affect the fingerprint.
    """
    interface: str
    external_port: int
    protocol: Protocol
    node_address: str
    node_port: int
    allow_range: Optional[str] = None
    internal: bool = False
    pool: tuple[str, ...] = ()
    service: str = ""

    @property
    def match_key(self) -> tuple[str, int, Protocol]:
        return (self.interface, self.external_port, self.protocol)

    @property
    def probability(self) -> Optional[float]:
        """Match probability, or None for the unconditional last rule of a pool.

        The i-th of n rules matches with probability 1/(n-i), so each node
        receives 1/n of the new connections.
        """
        if self.node_address not in self.pool:
            return None
        remaining = len(self.pool) - self.pool.index(self.node_address)
        if remaining <= 1:
            return None
        return 1.0 / remaining

    @property
    def fingerprint(self) -> str:
        return fingerprint(self)

    def __str__(self) -> str:
        source = f" from {self.allow_range}" if self.allow_range else ""
        return (
            f"{self.interface}:{self.external_port}/{self.protocol.value}{source}"
            f" -> {self.node_address}:{self.node_port}"
        )


def fingerprint(rule: DesiredRule) -> str:
    """Stable digest of a rule's semantic fields."""
    fields = [
        rule.interface,
        str(rule.external_port),
        rule.protocol.value,
        rule.node_address,
        str(rule.node_port),
        rule.allow_range or "",
        "internal" if rule.internal else "public",
        ",".join(rule.pool),
    ]
    digest = hashlib.sha256("::".join(fields).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


class Fingerprinted(TypingProtocol):
    @property
    def fingerprint(self) -> str:
        ...


R = TypeVar("R", bound=Fingerprinted)


class RuleSet(Generic[R]):
    """Rules keyed by fingerprint, in insertion order."""

    def __init__(self, rules: Iterable[R] = ()) -> None:
        self._rules: dict[str, R] = {}
        for rule in rules:
            self.add(rule)

    def add(self, rule: R) -> bool:
        """Add a rule; returns False if its fingerprint is already present."""
        key = rule.fingerprint
        if key in self._rules:
            return False
        self._rules[key] = rule
        return True

    @property
    def fingerprints(self) -> list[str]:
        return list(self._rules)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, str):
            return item in self._rules
        key = getattr(item, "fingerprint", None)
        return key is not None and key in self._rules

    def __iter__(self) -> Iterator[R]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __bool__(self) -> bool:
        return bool(self._rules)

    def __repr__(self) -> str:
        return f"RuleSet({len(self._rules)} rules)"


def _forwarding_pool(nodes: Iterable[Node], console: Console) -> tuple[str, ...]:
    """Addresses of active nodes, ordered by node name, without duplicates."""
    pool: list[str] = []
    for node in sorted(nodes, key=lambda n: n.name):
        if not node.active:
            continue
        if node.address in pool:
            console.warn("Node shares its address with another node, skipping it",
                         node=node.name, address=node.address)
            continue
        pool.append(node.address)
    return tuple(pool)


def build_desired(
    nodes: Iterable[Node],
    services: Iterable[ServiceSpec],
    interfaces: Iterable[str],
    external_interface: Optional[str] = None,
    *,
    console: Console = default_console,
) -> RuleSet[DesiredRule]:
    """Fold nodes and services into the canonical desired ruleset.

    Services are visited in (namespace, name) order, mappings in annotation
    order, interfaces in configured order and nodes in name order. Only the
    given interfaces are forwarded from; the external interface merely
    withholds itself from internal services. When two services claim the
    same port on the same interface, the first one in that order keeps it.

    Args:
        nodes: Known nodes (inactive ones are ignored)
        services: Known services with external ports
        interfaces: Interfaces to forward from
        external_interface: Interface withheld from internal services

    Returns:
        Desired rules, identical for identical inputs
    """
    targets = list(interfaces)

    pool = _forwarding_pool(nodes, console)
    rules: RuleSet[DesiredRule] = RuleSet()
    if not pool:
        return rules

    claimed: dict[tuple[str, int, Protocol], str] = {}

    for service in sorted(services, key=lambda s: (s.namespace, s.name)):
        service_interfaces = [
            iface for iface in targets
            if not (service.internal and iface == external_interface)
        ]
        for mapping in service.mappings:
            for iface in service_interfaces:
                key = (iface, mapping.external_port, mapping.protocol)
                owner = claimed.get(key)
                if owner is not None and owner != service.fqn:
                    console.warn(
                        "External port already claimed, skipping mapping",
                        service=service.fqn,
                        owner=owner,
                        interface=iface,
                        port=f"{mapping.external_port}/{mapping.protocol.value}",
                    )
                    continue
                claimed[key] = service.fqn

                for address in pool:
                    rules.add(DesiredRule(
                        interface=iface,
                        external_port=mapping.external_port,
                        protocol=mapping.protocol,
                        node_address=address,
                        node_port=mapping.node_port,
                        allow_range=service.allow_range,
                        internal=service.internal,
                        pool=pool,
                        service=service.fqn,
                    ))

    return rules
