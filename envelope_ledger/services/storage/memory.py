"""
In-Memory Remote Store

A complete RemoteStoreInterface kept in process memory. Used by the tests and
for local development without a Google account.

Failure injection lets tests simulate an outage or a rejected write:

    remote = InMemoryRemoteStore()
    remote.available = False                                  # every call fails, unavailable
    remote.inject_failure(RemoteErrorKind.PERMISSION_DENIED)  # next call fails once
"""

import copy
from collections import defaultdict
from collections.abc import Callable
from typing import Optional

import structlog

from envelope_ledger.models.documents import Collection
from envelope_ledger.services.storage.interface import (
    Document,
    NotFoundError,
    RemoteErrorKind,
    RemoteStoreError,
    RemoteStoreInterface,
    SnapshotCallback,
    Subscription,
    order_documents,
)


logger = structlog.get_logger(__name__)


class InMemorySubscription(Subscription):

    def __init__(self, store: "InMemoryRemoteStore", key: tuple[str, Collection], callback: SnapshotCallback):
        self._store = store
        self._key = key
        self.callback = callback
        self._active = True

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._store._unsubscribe(self._key, self)

    @property
    def active(self) -> bool:
        return self._active


class InMemoryRemoteStore(RemoteStoreInterface):
    """Per-user document collections held in dictionaries."""

    def __init__(self):
        self._documents: dict[tuple[str, Collection], dict[str, Document]] = defaultdict(dict)
        self._subscriptions: dict[tuple[str, Collection], list[InMemorySubscription]] = defaultdict(list)
        self._failures: list[RemoteStoreError] = []
        self.available = True
        self.calls: list[tuple[str, str, Optional[str]]] = []

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def inject_failure(self, kind: RemoteErrorKind, times: int = 1) -> None:
        """Make the next ``times`` calls fail with ``kind``."""
        for _ in range(times):
            self._failures.append(RemoteStoreError(f"Injected {kind.value} failure", kind))

    def _check(self, operation: str, collection: Collection, doc_id: Optional[str] = None) -> None:
        self.calls.append((operation, collection.value, doc_id))
        if not self.available:
            raise RemoteStoreError("Remote store unavailable", RemoteErrorKind.UNAVAILABLE)
        if self._failures:
            raise self._failures.pop(0)

    # ------------------------------------------------------------------
    # RemoteStoreInterface
    # ------------------------------------------------------------------

    async def set_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
        document: Document,
    ) -> None:
        self._check("set", collection, doc_id)
        self._documents[(user_id, collection)][doc_id] = copy.deepcopy(document)
        self._notify(user_id, collection)

    async def update_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
        fields: Document,
    ) -> None:
        self._check("update", collection, doc_id)
        documents = self._documents[(user_id, collection)]
        if doc_id not in documents:
            raise NotFoundError(f"{collection.value}/{doc_id} not found")
        documents[doc_id].update(copy.deepcopy(fields))
        self._notify(user_id, collection)

    async def delete_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
    ) -> None:
        self._check("delete", collection, doc_id)
        if self._documents[(user_id, collection)].pop(doc_id, None) is not None:
            self._notify(user_id, collection)

    async def list_documents(
        self,
        user_id: str,
        collection: Collection,
    ) -> list[Document]:
        self._check("list", collection)
        return self._snapshot(user_id, collection)

    async def subscribe(
        self,
        user_id: str,
        collection: Collection,
        callback: SnapshotCallback,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        self._check("subscribe", collection)
        key = (user_id, collection)
        subscription = InMemorySubscription(self, key, callback)
        self._subscriptions[key].append(subscription)
        callback(self._snapshot(user_id, collection))
        return subscription

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def documents(self, user_id: str, collection: Collection) -> dict[str, Document]:
        """Direct view for assertions; bypasses failure injection."""
        return self._documents[(user_id, collection)]

    def _snapshot(self, user_id: str, collection: Collection) -> list[Document]:
        documents = copy.deepcopy(list(self._documents[(user_id, collection)].values()))
        return order_documents(collection, documents)

    def _notify(self, user_id: str, collection: Collection) -> None:
        key = (user_id, collection)
        for subscription in list(self._subscriptions[key]):
            try:
                subscription.callback(self._snapshot(user_id, collection))
            except Exception as e:
                logger.error(
                    "memory_store_subscriber_failed",
                    collection=collection.value,
                    error=str(e),
                )

    def _unsubscribe(self, key: tuple[str, Collection], subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions[key]:
            self._subscriptions[key].remove(subscription)
