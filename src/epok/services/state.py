"""Cluster state: the Services and Nodes the watcher has seen."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from epok.core.output import Console, console as default_console
from epok.services.annotations import Node, ServiceSpec, node_from_object, service_from_object


class ResourceKind(str, Enum):
    SERVICE = "service"
    NODE = "node"


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    # full listing replacing every record of a kind
    RELIST = "RELIST"


@dataclass(frozen=True)
class ResourceEvent:
    """A change notification for one resource kind."""
    kind: ResourceKind
    type: EventType
    objects: tuple[Any, ...] = ()

    @classmethod
    def relist(cls, kind: ResourceKind, items: list[Any]) -> "ResourceEvent":
        return cls(kind=kind, type=EventType.RELIST, objects=tuple(items))

    @classmethod
    def from_watch(cls, kind: ResourceKind, event: dict[str, Any]) -> "ResourceEvent":
        return cls(kind=kind, type=EventType(event["type"]), objects=(event["object"],))

    def __str__(self) -> str:
        return f"{self.kind.value} {self.type.value} ({len(self.objects)})"


def _object_key(kind: ResourceKind, obj: Any) -> str:
    metadata = obj.metadata
    if kind == ResourceKind.SERVICE:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


class ClusterState:
    """Services with external ports and all known nodes.

    Owned by the reconciliation loop thread; watcher threads never touch it.
    """

    def __init__(self, *, console: Console = default_console) -> None:
        self.console = console
        self._services: dict[str, ServiceSpec] = {}
        self._nodes: dict[str, Node] = {}

    @property
    def services(self) -> list[ServiceSpec]:
        return list(self._services.values())

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def _convert(self, kind: ResourceKind, obj: Any) -> Optional[Union[ServiceSpec, Node]]:
        if kind == ResourceKind.SERVICE:
            return service_from_object(obj, console=self.console)
        return node_from_object(obj, console=self.console)

    def _records(self, kind: ResourceKind) -> dict:
        return self._services if kind == ResourceKind.SERVICE else self._nodes

    def apply(self, event: ResourceEvent) -> bool:
        """Fold an event into the state.

        Returns:
            True if the records changed
        """
        records = self._records(event.kind)

        if event.type == EventType.RELIST:
            fresh = {}
            for obj in event.objects:
                record = self._convert(event.kind, obj)
                if record is not None:
                    fresh[_object_key(event.kind, obj)] = record
            changed = fresh != records
            records.clear()
            records.update(fresh)
            return changed

        changed = False
        for obj in event.objects:
            key = _object_key(event.kind, obj)
            if event.type == EventType.DELETED:
                changed = records.pop(key, None) is not None or changed
                continue

            record = self._convert(event.kind, obj)
            if record is None:
                changed = records.pop(key, None) is not None or changed
            elif records.get(key) != record:
                records[key] = record
                changed = True
        return changed

    def __repr__(self) -> str:
        return f"ClusterState(services={len(self._services)}, nodes={len(self._nodes)})"
