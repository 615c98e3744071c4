"""Services package."""

from envelope_ledger.services.connectivity import (
    ConnectivityMonitor,
    ProbeResult,
)
from envelope_ledger.services.storage import (
    ConnectionError,
    ErrorClass,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    InMemoryRemoteStore,
    NotFoundError,
    RemoteErrorKind,
    RemoteStoreError,
    RemoteStoreInterface,
    StorageError,
    classify_error,
)

__all__ = [
    # Connectivity
    "ConnectivityMonitor",
    "ProbeResult",
    # Storage services
    "ConnectionError",
    "ErrorClass",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "InMemoryRemoteStore",
    "NotFoundError",
    "RemoteErrorKind",
    "RemoteStoreError",
    "RemoteStoreInterface",
    "StorageError",
    "classify_error",
]
