"""Unit tests for the Kubernetes watcher."""

import queue
import threading
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

from epok.core.exceptions import StartupError
from epok.core.executor import RetryPolicy
from epok.services.state import EventType, ResourceKind
from epok.services.watcher import KubeWatcher, load_kube_config


def listing(items, resource_version="5"):
    return Mock(metadata=Mock(resource_version=resource_version), items=items)


@pytest.fixture
def core_api(make_node, make_service):
    api = Mock()
    api.list_node.return_value = listing([make_node("n1", "10.0.0.1")])
    api.list_service_for_all_namespaces.return_value = listing([make_service("mail", "25:2025")])
    return api


@pytest.fixture
def events():
    return queue.Queue()


@pytest.fixture
def watcher(core_api, events, ctx):
    return KubeWatcher(core_api, events, backoff=RetryPolicy(base_delay=0.0, max_delay=0.0),
                       console=ctx.console)


def drain(events):
    items = []
    while not events.empty():
        items.append(events.get_nowait())
    return items


class TestLoadKubeConfig:
    """Tests for credential loading."""

    @patch("epok.services.watcher.config")
    def test_in_cluster_first(self, mock_config):
        """In-cluster credentials should be tried first."""
        load_kube_config()
        mock_config.load_incluster_config.assert_called_once()
        mock_config.load_kube_config.assert_not_called()

    @patch("epok.services.watcher.config.load_kube_config")
    @patch("epok.services.watcher.config.load_incluster_config")
    def test_falls_back_to_kubeconfig(self, incluster, kubeconfig):
        """Outside a cluster the kubeconfig file should be used."""
        incluster.side_effect = ConfigException("not in cluster")
        load_kube_config()
        kubeconfig.assert_called_once_with()

    @patch("epok.services.watcher.config.load_kube_config")
    def test_explicit_path(self, kubeconfig):
        """An explicit path should go straight to that file."""
        load_kube_config(Path("/tmp/kc"))
        kubeconfig.assert_called_once_with(config_file="/tmp/kc")

    @patch("epok.services.watcher.config.load_kube_config")
    @patch("epok.services.watcher.config.load_incluster_config")
    def test_nothing_available(self, incluster, kubeconfig):
        """No usable configuration should be a startup error."""
        incluster.side_effect = ConfigException("not in cluster")
        kubeconfig.side_effect = ConfigException("no kubeconfig")
        with pytest.raises(StartupError) as exc:
            load_kube_config()
        assert exc.value.exit_code == 20


class TestInitialSync:
    """Tests for the startup listing."""

    def test_relists_both_kinds(self, watcher, events):
        """Both kinds should be listed and sent as RELIST events."""
        watcher.initial_sync()
        items = drain(events)
        assert [(e.kind, e.type) for e in items] == [
            (ResourceKind.SERVICE, EventType.RELIST),
            (ResourceKind.NODE, EventType.RELIST),
        ]

    def test_api_error(self, watcher, core_api):
        """An API error at startup should be a StartupError."""
        core_api.list_node.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(StartupError) as exc:
            watcher.initial_sync()
        assert "403" in exc.value.message

    def test_unreachable(self, watcher, core_api):
        """A connection failure at startup should be a StartupError."""
        core_api.list_service_for_all_namespaces.side_effect = OSError("connection refused")
        with pytest.raises(StartupError):
            watcher.initial_sync()


class TestWatchKind:
    """Tests for the watch thread body."""

    @patch("epok.services.watcher.watch.Watch")
    def test_forwards_events(self, mock_watch, watcher, events, make_node):
        """Watch events should be queued in order."""
        stop = threading.Event()
        node = make_node("n2", "10.0.0.2")

        def stream(*args, **kwargs):
            assert kwargs["resource_version"] == "5"
            yield {"type": "ADDED", "object": node}
            yield {"type": "BOOKMARK", "object": node}
            stop.set()

        mock_watch.return_value.stream.side_effect = stream
        watcher.initial_sync()
        drain(events)
        watcher.watch_kind(ResourceKind.NODE, stop)

        items = drain(events)
        assert len(items) == 1
        assert items[0].type == EventType.ADDED
        assert items[0].objects == (node,)

    @patch("epok.services.watcher.watch.Watch")
    def test_expired_version_relists(self, mock_watch, watcher, events, core_api, make_node):
        """A 410 raised mid-stream should relist after the events already seen."""
        stop = threading.Event()
        node = make_node("n2", "10.0.0.2")

        def expired(*args, **kwargs):
            yield {"type": "ADDED", "object": node}
            raise ApiException(status=410, reason="Expired")

        def idle(*args, **kwargs):
            assert kwargs["resource_version"] == "5"
            stop.set()
            yield from ()

        mock_watch.return_value.stream.side_effect = [expired(), idle()]
        watcher.initial_sync()
        drain(events)
        watcher.watch_kind(ResourceKind.NODE, stop)

        assert core_api.list_node.call_count == 2
        assert [e.type for e in drain(events)] == [EventType.ADDED, EventType.RELIST]

    @patch("epok.services.watcher.watch.Watch")
    def test_gone_exception_relists(self, mock_watch, watcher, events, core_api):
        """A 410 raised as an exception should also relist."""
        stop = threading.Event()

        def idle(*args, **kwargs):
            stop.set()
            yield from ()

        mock_watch.return_value.stream.side_effect = [ApiException(status=410), idle()]
        watcher.initial_sync()
        watcher.watch_kind(ResourceKind.SERVICE, stop)
        assert core_api.list_service_for_all_namespaces.call_count == 2

    @patch("epok.services.watcher.watch.Watch")
    def test_api_error_backs_off(self, mock_watch, watcher, core_api):
        """Other API errors should be retried after a backoff."""
        stop = threading.Event()

        def idle(*args, **kwargs):
            stop.set()
            yield from ()

        mock_watch.return_value.stream.side_effect = [ApiException(status=500), idle()]
        watcher.initial_sync()
        watcher.watch_kind(ResourceKind.NODE, stop)

        assert mock_watch.return_value.stream.call_count == 2
        assert core_api.list_node.call_count == 1

    def test_stop_interrupts_streams(self, watcher):
        """stop() should stop every open stream."""
        stream = Mock()
        watcher._active.add(stream)
        watcher.stop()
        stream.stop.assert_called_once()
