"""Rule computation, iptables access and the reconciliation loop."""

from epok.services.iptables import IptablesService
from epok.services.reconciler import ReconciliationLoop, Reconciler
from epok.services.state import ClusterState
from epok.services.watcher import KubeWatcher

__all__ = [
    "ClusterState",
    "IptablesService",
    "KubeWatcher",
    "Reconciler",
    "ReconciliationLoop",
]
