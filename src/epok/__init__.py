"""
epok - Kubernetes external port forwarding with iptables.

Watches Services and Nodes and keeps nat PREROUTING DNAT rules in sync with
their epok annotations, on this host or on a remote one over SSH.
"""

__version__ = "1.0.0"
