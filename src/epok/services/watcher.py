"""Kubernetes watcher: list-then-watch Services and Nodes into a queue.

Each resource kind gets a daemon thread. A thread only enqueues
ResourceEvents; the reconciliation loop owns the cluster state. Every
(re)list is sent as one RELIST event so deletions missed while the watch was
down are not lost.
"""

import queue
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

from epok.core.exceptions import StartupError
from epok.core.executor import RetryPolicy
from epok.core.output import Console, console as default_console
from epok.services.state import EventType, ResourceEvent, ResourceKind


# server side watch timeout; the stream is simply reopened afterwards
WATCH_TIMEOUT_SECONDS = 300
HTTP_GONE = 410
WATCH_BACKOFF = RetryPolicy(max_attempts=1, base_delay=0.8, multiplier=2.0, max_delay=30.0)


def load_kube_config(kubeconfig: Optional[Path] = None) -> None:
    """Load in-cluster credentials, falling back to a kubeconfig file.

    Raises:
        StartupError: If no usable configuration is found
    """
    try:
        if kubeconfig is not None:
            config.load_kube_config(config_file=str(kubeconfig))
            return
        try:
            config.load_incluster_config()
        except ConfigException:
            config.load_kube_config()
    except (ConfigException, OSError) as e:
        raise StartupError(
            "Cannot load Kubernetes configuration",
            details=[str(e)],
            hint="Run inside the cluster or set KUBECONFIG / EPOK_KUBECONFIG",
        ) from e


class KubeWatcher:
    """Streams Service and Node changes into an event queue."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        events: "queue.Queue[ResourceEvent]",
        *,
        backoff: RetryPolicy = WATCH_BACKOFF,
        console: Console = default_console,
    ) -> None:
        self.core_api = core_api
        self.events = events
        self.backoff = backoff
        self.console = console
        self._resource_versions: dict[ResourceKind, Optional[str]] = {}
        self._active: set[watch.Watch] = set()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def _list_function(self, kind: ResourceKind) -> Callable[..., Any]:
        if kind == ResourceKind.SERVICE:
            return self.core_api.list_service_for_all_namespaces
        return self.core_api.list_node

    def relist(self, kind: ResourceKind) -> Optional[str]:
        """List every object of a kind and enqueue a RELIST event.

        Returns:
            The list's resourceVersion to watch from

        Raises:
            ApiException: If the API call fails
        """
        response = self._list_function(kind)()
        resource_version = getattr(response.metadata, "resource_version", None)
        self.events.put(ResourceEvent.relist(kind, list(response.items or [])))
        self.console.debug("Listed resources", kind=kind.value,
                           count=len(response.items or []),
                           resource_version=resource_version)
        return resource_version

    def initial_sync(self) -> None:
        """List both kinds once so the first pass sees the whole cluster.

        Raises:
            StartupError: If the cluster cannot be reached
        """
        for kind in ResourceKind:
            try:
                self._resource_versions[kind] = self.relist(kind)
            except ApiException as e:
                raise StartupError(
                    f"Cannot list {kind.value}s (HTTP {e.status})",
                    details=[str(e.reason)],
                    hint="Check the API server address and the RBAC permissions "
                         "to list and watch services and nodes",
                ) from e
            except Exception as e:
                raise StartupError(
                    "Kubernetes API is unreachable",
                    details=[str(e)],
                ) from e

    def start(self, stop: threading.Event) -> list[threading.Thread]:
        """Start one daemon watch thread per kind."""
        for kind in ResourceKind:
            thread = threading.Thread(
                target=self.watch_kind,
                args=(kind, stop),
                name=f"epok-watch-{kind.value}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        return self._threads

    def stop(self) -> None:
        """Interrupt any open watch stream."""
        with self._lock:
            active = list(self._active)
        for stream in active:
            stream.stop()

    def _stream(self, kind: ResourceKind, resource_version: Optional[str],
                stop: threading.Event) -> Optional[str]:
        """Forward events until the stream ends; returns the last resourceVersion.

        Raises:
            ApiException: If the watch fails, status 410 when the version expired
        """
        stream = watch.Watch()
        with self._lock:
            self._active.add(stream)
        try:
            for raw in stream.stream(
                self._list_function(kind),
                resource_version=resource_version,
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
            ):
                if stop.is_set():
                    stream.stop()
                    break

                event_type = raw.get("type")
                obj = raw.get("object")
                if event_type not in (EventType.ADDED, EventType.MODIFIED, EventType.DELETED):
                    continue

                metadata = getattr(obj, "metadata", None)
                if metadata is not None and metadata.resource_version:
                    resource_version = metadata.resource_version
                self.events.put(ResourceEvent.from_watch(kind, raw))
        finally:
            with self._lock:
                self._active.discard(stream)
        return resource_version

    def watch_kind(self, kind: ResourceKind, stop: threading.Event) -> None:
        """Watch one kind until stop is set, relisting and backing off as needed."""
        resource_version = self._resource_versions.get(kind)
        failures = 0

        while not stop.is_set():
            try:
                if resource_version is None:
                    resource_version = self.relist(kind)
                resource_version = self._stream(kind, resource_version, stop)
                failures = 0
                continue
            except ApiException as e:
                if e.status == HTTP_GONE:
                    self.console.verbose("Watch expired, relisting", kind=kind.value)
                    resource_version = None
                    continue
                failures += 1
                cause = f"HTTP {e.status}: {e.reason}"
            except Exception as e:
                failures += 1
                cause = str(e) or type(e).__name__

            delay = self.backoff.delay(failures)
            self.console.warn("Watch failed, retrying", kind=kind.value,
                              cause=cause, retry_in=f"{delay:.1f}s")
            stop.wait(delay)
