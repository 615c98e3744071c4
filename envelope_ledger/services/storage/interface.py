"""
Abstract Remote Store Interface

DESIGN DECISION: We define an abstract interface for the remote document store.
This allows us to:
1. Swap Google Sheets for another document database later
2. Use in-memory storage for testing and offline development
3. Keep the reconciler decoupled from any vendor SDK

The interface is intentionally small: per-user collections of JSON documents,
keyed by id. No queries beyond "the whole collection, in display order".

Errors carry a structured RemoteErrorKind produced by the adapter from HTTP
status codes or exception types, so callers never inspect message text.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any, Optional

import httpx

from envelope_ledger.models.documents import Collection


Document = dict[str, Any]
SnapshotCallback = Callable[[list[Document]], None]


class RemoteErrorKind(str, Enum):
    """Why a remote call failed."""
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    PERMISSION_DENIED = "permission_denied"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_KINDS


TRANSIENT_KINDS = frozenset({
    RemoteErrorKind.UNAVAILABLE,
    RemoteErrorKind.CANCELLED,
    RemoteErrorKind.DEADLINE_EXCEEDED,
})


class ErrorClass(str, Enum):
    """How the reconciler should react to a failure."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class RemoteStoreError(StorageError):
    """A remote call failed; ``kind`` says why."""

    def __init__(self, message: str, kind: RemoteErrorKind = RemoteErrorKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind


class NotFoundError(RemoteStoreError):
    """Document not found in storage."""

    def __init__(self, message: str):
        super().__init__(message, RemoteErrorKind.NOT_FOUND)


class ConnectionError(StorageError):
    """Could not connect to storage backend."""

    def __init__(self, message: str, kind: RemoteErrorKind = RemoteErrorKind.UNAVAILABLE):
        super().__init__(message)
        self.kind = kind


def error_kind(exc: BaseException) -> RemoteErrorKind:
    """Structured kind of any exception raised around a remote call."""
    if isinstance(exc, (RemoteStoreError, ConnectionError)):
        return exc.kind
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return RemoteErrorKind.DEADLINE_EXCEEDED
    if isinstance(exc, (OSError, httpx.TransportError)):
        return RemoteErrorKind.UNAVAILABLE
    return RemoteErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Decide whether a failure is worth retrying later.

    Transient: network-shaped failures (unavailable, cancelled, timeouts,
    transport and OS errors). Everything else is permanent.
    """
    if error_kind(exc).is_transient:
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def order_documents(collection: Collection, documents: list[Document]) -> list[Document]:
    """Envelopes by ``orderIndex``, transactions newest first, others by id."""
    if collection is Collection.ENVELOPES:
        return sorted(documents, key=lambda d: (d.get("orderIndex") or 0, d.get("id", "")))
    if collection is Collection.TRANSACTIONS:
        return sorted(documents, key=lambda d: str(d.get("date") or ""), reverse=True)
    return sorted(documents, key=lambda d: d.get("id", ""))


class Subscription(ABC):
    """Handle for a live collection subscription."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivering snapshots. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def active(self) -> bool:
        pass


class RemoteStoreInterface(ABC):
    """
    Abstract interface for the remote document store.

    Every method is scoped to one user's namespace. Any implementation
    (Google Sheets, in-memory, a document database) must implement these.
    """

    @abstractmethod
    async def set_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
        document: Document,
    ) -> None:
        """
        Create or fully replace a document.

        Raises:
            RemoteStoreError: If the write fails
        """
        pass

    @abstractmethod
    async def update_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
        fields: Document,
    ) -> None:
        """
        Merge ``fields`` into an existing document.

        Raises:
            NotFoundError: If the document doesn't exist
            RemoteStoreError: If the write fails
        """
        pass

    @abstractmethod
    async def delete_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
    ) -> None:
        """
        Delete a document. Deleting a missing document is not an error.

        Raises:
            RemoteStoreError: If the delete fails
        """
        pass

    @abstractmethod
    async def list_documents(
        self,
        user_id: str,
        collection: Collection,
    ) -> list[Document]:
        """
        Every document of a collection, in display order.

        Returns:
            Envelopes by orderIndex, transactions by date descending
        """
        pass

    @abstractmethod
    async def subscribe(
        self,
        user_id: str,
        collection: Collection,
        callback: SnapshotCallback,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """
        Deliver ordered snapshots of a collection whenever it changes.

        The current snapshot is delivered once right away.
        """
        pass
