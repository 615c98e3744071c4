"""Connectivity detection."""

from envelope_ledger.services.connectivity.monitor import (
    ConnectivityMonitor,
    ProbeResult,
    network_interface_up,
)

__all__ = [
    "ConnectivityMonitor",
    "ProbeResult",
    "network_interface_up",
]
