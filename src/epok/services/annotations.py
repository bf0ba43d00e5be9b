"""Annotation model: typed records parsed from Kubernetes objects.

Annotation/label contract:
- ``epok.getbetter.ro/externalports``: ``"<ext>:<nodeport>[:udp](,...)*"`` on a Service
- ``epok.getbetter.ro/internal``: presence-only, on a Service
- ``epok.getbetter.ro/allow-range``: one IPv4 CIDR, on a Service
- ``epok.getbetter.ro/exclude`` annotation or ``epok_exclude`` label on a Node

Parsing is per entry: a malformed port mapping is reported and skipped while
the rest of the service's mappings still apply.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from epok.core.exceptions import ParseError
from epok.core.output import Console, console as default_console
from epok.core.validation import validate_cidr, validate_port


ANNOTATION_PREFIX = "epok.getbetter.ro"
EXTERNAL_PORTS_ANNOTATION = f"{ANNOTATION_PREFIX}/externalports"
INTERNAL_ANNOTATION = f"{ANNOTATION_PREFIX}/internal"
ALLOW_RANGE_ANNOTATION = f"{ANNOTATION_PREFIX}/allow-range"
NODE_EXCLUDE_ANNOTATION = f"{ANNOTATION_PREFIX}/exclude"
NODE_EXCLUDE_LABEL = "epok_exclude"


class Protocol(str, Enum):
    """Transport protocol of a forwarded port."""
    TCP = "tcp"
    UDP = "udp"


@dataclass(frozen=True)
class PortMapping:
    """One ``<ext>:<nodeport>[:proto]`` entry."""
    external_port: int
    node_port: int
    protocol: Protocol = Protocol.TCP

    def __str__(self) -> str:
        if self.protocol == Protocol.UDP:
            return f"{self.external_port}:{self.node_port}:udp"
        return f"{self.external_port}:{self.node_port}"


@dataclass(frozen=True)
class ServiceSpec:
    """A Service that asks for external ports."""
    namespace: str
    name: str
    mappings: tuple[PortMapping, ...] = ()
    internal: bool = False
    allow_range: Optional[str] = None

    @property
    def fqn(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        ports = ",".join(str(m) for m in self.mappings)
        return f"{self.fqn} [{ports}]"


@dataclass(frozen=True)
class Node:
    """A cluster node and its InternalIP addresses."""
    name: str
    addresses: tuple[str, ...] = ()
    excluded: bool = False
    ready: bool = True

    @property
    def address(self) -> Optional[str]:
        """Forwarding address: the first InternalIP."""
        return self.addresses[0] if self.addresses else None

    @property
    def active(self) -> bool:
        """Whether the node receives forwarded traffic."""
        return self.ready and not self.excluded and self.address is not None


def parse_port_mapping(entry: str) -> PortMapping:
    """Parse one ``ext:nodeport[:proto]`` entry.

    Raises:
        ParseError: On wrong part count, bad integers, out-of-range ports or
            an unknown protocol suffix
    """
    parts = entry.strip().split(":")
    if len(parts) not in (2, 3):
        raise ParseError(
            f"Malformed port mapping: {entry!r}",
            value=entry,
            hint="Use <external>:<nodeport> or <external>:<nodeport>:udp",
        )

    external_port = validate_port(parts[0], field="external port")
    node_port = validate_port(parts[1], field="node port")

    protocol = Protocol.TCP
    if len(parts) == 3:
        suffix = parts[2].strip().lower()
        try:
            protocol = Protocol(suffix)
        except ValueError:
            raise ParseError(
                f"Unknown protocol {parts[2]!r} in port mapping {entry!r}",
                value=entry,
                hint="Supported protocols: tcp, udp",
            )

    return PortMapping(external_port=external_port, node_port=node_port, protocol=protocol)


def parse_external_ports(value: str) -> tuple[list[PortMapping], list[ParseError]]:
    """Parse the externalports annotation entry by entry.

    Duplicate (external_port, protocol) entries keep the first occurrence.

    Returns:
        (mappings in annotation order, one ParseError per rejected entry)
    """
    mappings: list[PortMapping] = []
    errors: list[ParseError] = []
    seen: set[tuple[int, Protocol]] = set()

    for entry in value.split(","):
        if not entry.strip():
            errors.append(ParseError("Empty port mapping entry", value=value))
            continue
        try:
            mapping = parse_port_mapping(entry)
        except ParseError as e:
            errors.append(e)
            continue

        key = (mapping.external_port, mapping.protocol)
        if key in seen:
            errors.append(ParseError(
                f"Duplicate external port {mapping.external_port}/{mapping.protocol.value}",
                value=entry,
            ))
            continue
        seen.add(key)
        mappings.append(mapping)

    return mappings, errors


def is_internal(annotations: Optional[dict[str, str]]) -> bool:
    """Presence of the internal annotation, whatever its value."""
    return INTERNAL_ANNOTATION in (annotations or {})


def parse_allow_range(annotations: Optional[dict[str, str]]) -> Optional[str]:
    """Return the normalized allow-range CIDR, if annotated.

    Raises:
        ParseError: If the value is not a single IPv4 CIDR
    """
    value = (annotations or {}).get(ALLOW_RANGE_ANNOTATION)
    if value is None:
        return None
    return validate_cidr(value)


def is_node_excluded(
    annotations: Optional[dict[str, str]],
    labels: Optional[dict[str, str]],
) -> bool:
    """Either the exclude annotation or the exclude label is enough."""
    return (
        NODE_EXCLUDE_ANNOTATION in (annotations or {})
        or NODE_EXCLUDE_LABEL in (labels or {})
    )


def service_from_object(
    obj: Any,
    *,
    console: Console = default_console,
) -> Optional[ServiceSpec]:
    """Convert a V1Service into a ServiceSpec.

    Returns None when the service does not ask for external ports, when none
    of its entries parse, or when its allow-range is invalid. Rejected entries
    are logged as warnings.
    """
    metadata = obj.metadata
    annotations = metadata.annotations or {}
    fqn = f"{metadata.namespace}/{metadata.name}"

    raw_ports = annotations.get(EXTERNAL_PORTS_ANNOTATION)
    if raw_ports is None:
        return None

    mappings, errors = parse_external_ports(raw_ports)
    for error in errors:
        console.warn(
            "Skipping port mapping",
            service=fqn,
            annotation=EXTERNAL_PORTS_ANNOTATION,
            cause=error.message,
        )

    if not mappings:
        return None

    try:
        allow_range = parse_allow_range(annotations)
    except ParseError as e:
        console.warn(
            "Skipping service with invalid allow-range",
            service=fqn,
            annotation=ALLOW_RANGE_ANNOTATION,
            cause=e.message,
        )
        return None

    return ServiceSpec(
        namespace=metadata.namespace or "default",
        name=metadata.name,
        mappings=tuple(mappings),
        internal=is_internal(annotations),
        allow_range=allow_range,
    )


def _internal_addresses(status: Any) -> tuple[str, ...]:
    addresses = getattr(status, "addresses", None) or []
    return tuple(a.address for a in addresses if a.type == "InternalIP" and a.address)


def _is_ready(status: Any) -> bool:
    conditions = getattr(status, "conditions", None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def node_from_object(
    obj: Any,
    *,
    console: Console = default_console,
) -> Node:
    """Convert a V1Node into a Node.

    A node without an InternalIP is kept (so deletions still match by name)
    but is never active.
    """
    metadata = obj.metadata
    status = obj.status
    addresses = _internal_addresses(status)
    if not addresses:
        console.warn("Node has no InternalIP address, ignoring it", node=metadata.name)

    return Node(
        name=metadata.name,
        addresses=addresses,
        excluded=is_node_excluded(metadata.annotations, metadata.labels),
        ready=_is_ready(status),
    )
