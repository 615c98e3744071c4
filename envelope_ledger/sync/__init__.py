"""
Offline-first sync.

The reconciler mirrors ledger changes to the remote store and reconciles
after connectivity returns.
"""

from envelope_ledger.sync.local_cache import LocalLedgerCache
from envelope_ledger.sync.reconciler import SyncReconciler
from envelope_ledger.sync.snapshots import (
    EXPORT_VERSION,
    SnapshotError,
    export_snapshot,
    load_fallback_snapshot,
    parse_snapshot,
)

__all__ = [
    "EXPORT_VERSION",
    "LocalLedgerCache",
    "SnapshotError",
    "SyncReconciler",
    "export_snapshot",
    "load_fallback_snapshot",
    "parse_snapshot",
]
