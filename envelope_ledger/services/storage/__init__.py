"""
Storage Services Package

Provides the abstract remote store interface and its implementations.
Google Sheets is the production backend; the in-memory store serves tests
and offline development.
"""

from envelope_ledger.services.storage.interface import (
    ConnectionError,
    ErrorClass,
    NotFoundError,
    RemoteErrorKind,
    RemoteStoreError,
    RemoteStoreInterface,
    StorageError,
    Subscription,
    classify_error,
    error_kind,
)
from envelope_ledger.services.storage.memory import InMemoryRemoteStore
from envelope_ledger.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
)

__all__ = [
    # Interfaces
    "RemoteStoreInterface",
    "Subscription",
    # Error classification
    "ErrorClass",
    "RemoteErrorKind",
    "classify_error",
    "error_kind",
    # Exceptions
    "ConnectionError",
    "NotFoundError",
    "RemoteStoreError",
    "StorageError",
    # Implementations
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "InMemoryRemoteStore",
]
