"""
Sync Reconciler

Keeps the remote store in step with the local ledger, without ever making a
local operation wait for the network.

FLOW:
1. A store operation commits locally and hands its ChangeSet to
   ``on_ledger_change``.
2. If we are offline, or the session is not backed by a live remote user,
   the change is not sent. ``pending_sync`` is raised instead.
3. Otherwise the change set is mirrored in a background task. Mirrors run one
   at a time, in commit order.
4. A transient failure (network shaped) marks us offline with
   ``pending_sync`` raised and re-checks connectivity. A permanent failure is
   published on the event log and recorded in ``failed_changes``. Local state
   is never rolled back.
5. When connectivity returns with work pending, ``sync_data`` pushes the
   complete local state (last writer wins).

DESIGN DECISION: There is no operation queue. Local state is authoritative
and a full push is idempotent, so a single ``pending_sync`` flag is enough.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from envelope_ledger.config import SyncSettings, get_settings
from envelope_ledger.events import SyncEventLog
from envelope_ledger.ledger.changes import ChangeSet, Delete, DocumentWrite, Patch, Upsert
from envelope_ledger.ledger.store import LedgerStore
from envelope_ledger.models.documents import (
    Collection,
    fields_to_document,
    from_remote_document,
    to_remote_document,
)
from envelope_ledger.models.events import SyncEventBuilder
from envelope_ledger.models.ledger import AppSettings, LedgerSnapshot, utc_now
from envelope_ledger.models.session import AuthDecision
from envelope_ledger.models.sync import (
    FailedChange,
    ImportResult,
    SnapshotSource,
    SyncMeta,
    SyncStatus,
)
from envelope_ledger.services.connectivity import ConnectivityMonitor
from envelope_ledger.services.storage import (
    ErrorClass,
    RemoteStoreInterface,
    Subscription,
    classify_error,
    error_kind,
)
from envelope_ledger.session import SessionGate
from envelope_ledger.sync.local_cache import LocalLedgerCache
from envelope_ledger.sync.snapshots import (
    SnapshotError,
    export_snapshot,
    load_fallback_snapshot,
    parse_snapshot,
)


logger = structlog.get_logger(__name__)

# Collections mirrored in real time, in the order they are applied
REALTIME_COLLECTIONS = (
    Collection.ENVELOPES,
    Collection.TRANSACTIONS,
    Collection.DISTRIBUTION_TEMPLATES,
)


class SyncReconciler:
    """
    Offline-first mirror between a LedgerStore and a remote store.

    Usage:
        reconciler = SyncReconciler(store, remote, session, monitor)
        await reconciler.start()
        store.add_to_envelope(groceries.id, 50)   # returns at once
        await reconciler.flush()                  # wait for the remote write
    """

    def __init__(
        self,
        store: LedgerStore,
        remote: RemoteStoreInterface,
        session: SessionGate,
        monitor: ConnectivityMonitor,
        events: Optional[SyncEventLog] = None,
        settings: Optional[SyncSettings] = None,
        local_cache: Optional[LocalLedgerCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._remote = remote
        self._session = session
        self._monitor = monitor
        self._settings = settings or get_settings().sync
        self._clock = clock
        self.events = events or SyncEventLog()
        self.meta = SyncMeta()
        self.failed_changes: list[FailedChange] = []

        if local_cache is None and self._settings.local_cache_path:
            local_cache = LocalLedgerCache(self._settings.local_cache_path)
        self._local_cache = local_cache

        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._subscriptions: list[Subscription] = []
        current = session.current_user if session.is_authenticated else None
        self._active_user_id: Optional[str] = current.id if current else None

        store.add_listener(self.on_ledger_change)
        session.on_change(self.on_auth_decision)
        if self._local_cache is not None:
            self._local_cache.attach(store)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self.meta.status

    @property
    def store(self) -> LedgerStore:
        return self._store

    def _can_write(self) -> Optional[str]:
        """The user id to write under, or None when remote writes are off."""
        if not self.meta.is_online:
            return None
        return self._session.remote_user_id

    def mark_online_from_remote_success(self) -> None:
        """Any successful remote call proves we are online."""
        if not self.meta.is_online:
            self.meta.is_online = True
            self.events.publish(SyncEventBuilder.connectivity_changed(True))

    def _mark_offline(self) -> None:
        if self.meta.is_online:
            self.meta.is_online = False
            self.events.publish(SyncEventBuilder.connectivity_changed(False))

    def _save_local_cache(self) -> None:
        if self._local_cache is not None:
            self._local_cache.save(self._store.snapshot())

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def flush(self) -> None:
        """Wait until every background mirror and recheck has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> SnapshotSource:
        """Check connectivity, load the ledger and follow remote changes."""
        await self.update_online_status()
        source = await self.fetch_data()
        if source is SnapshotSource.REMOTE:
            await self.start_realtime()
        return source

    async def fetch_data(self) -> SnapshotSource:
        """
        Load the initial ledger.

        Remote first (online with a live user). Without the remote, the
        local cache and then the bundled fallback snapshot are used, but only
        while the store is still empty so unsynced local work is never
        replaced.
        """
        user_id = self._can_write()
        if user_id is not None and (self.meta.pending_sync or self.meta.reset_pending):
            # Local edits made offline go up before anything comes down
            await self.sync_data()
            user_id = self._can_write()

        if user_id is not None and not self.meta.pending_sync:
            try:
                snapshot = await self._load_remote(user_id)
            except Exception as e:
                kind = error_kind(e)
                self.events.publish(SyncEventBuilder.remote_load_failed(kind.value, str(e)))
                if classify_error(e) is ErrorClass.TRANSIENT:
                    self._mark_offline()
            else:
                self.mark_online_from_remote_success()
                self._active_user_id = user_id
                self._apply_snapshot(snapshot, SnapshotSource.REMOTE)
                if self._store.app_settings is None:
                    self._store.initialize_app_settings(user_id)
                return SnapshotSource.REMOTE

        if self._store.envelopes or self._store.transactions:
            logger.info("fetch_kept_local_state", envelopes=len(self._store.envelopes))
            return SnapshotSource.EMPTY

        for source, loader in (
            (SnapshotSource.LOCAL_CACHE, self._load_local_cache),
            (SnapshotSource.FALLBACK, self._load_fallback),
        ):
            try:
                snapshot = loader()
            except SnapshotError as e:
                logger.warning("snapshot_unusable", source=source.value, error=str(e))
                continue
            if snapshot is not None:
                self._apply_snapshot(snapshot, source)
                return source

        logger.info("fetch_started_empty")
        return SnapshotSource.EMPTY

    def _load_local_cache(self) -> Optional[LedgerSnapshot]:
        if self._local_cache is None:
            return None
        return self._local_cache.load()

    def _load_fallback(self) -> Optional[LedgerSnapshot]:
        return load_fallback_snapshot(self._settings.fallback_snapshot_path)

    def _apply_snapshot(self, snapshot: LedgerSnapshot, source: SnapshotSource) -> None:
        drift = self._store.load_snapshot(snapshot)
        self._save_local_cache()
        self.events.publish(
            SyncEventBuilder.snapshot_loaded(
                source.value,
                envelopes=len(snapshot.envelopes),
                transactions=len(snapshot.transactions),
                templates=len(snapshot.distribution_templates),
            )
        )
        if drift:
            self.events.publish(
                SyncEventBuilder.balance_drift_corrected(
                    {env_id: (str(cached), str(replayed)) for env_id, (cached, replayed) in drift.items()}
                )
            )

    async def _load_remote(self, user_id: str) -> LedgerSnapshot:
        collections = list(Collection)
        results = await asyncio.gather(
            *(self._remote.list_documents(user_id, collection) for collection in collections)
        )
        documents = dict(zip(collections, results))

        settings_docs = documents[Collection.APP_SETTINGS]
        app_settings = None
        if settings_docs:
            preferred = [d for d in settings_docs if d.get("id") == user_id] or settings_docs
            app_settings = from_remote_document(Collection.APP_SETTINGS, preferred[0])

        return LedgerSnapshot(
            envelopes=[from_remote_document(Collection.ENVELOPES, d) for d in documents[Collection.ENVELOPES]],
            transactions=[
                from_remote_document(Collection.TRANSACTIONS, d) for d in documents[Collection.TRANSACTIONS]
            ],
            distribution_templates=[
                from_remote_document(Collection.DISTRIBUTION_TEMPLATES, d)
                for d in documents[Collection.DISTRIBUTION_TEMPLATES]
            ],
            app_settings=app_settings,
        )

    # ------------------------------------------------------------------
    # Mirroring local changes
    # ------------------------------------------------------------------

    def on_ledger_change(self, changes: ChangeSet) -> None:
        """Store listener: schedule the remote mirror of one commit."""
        if not self.meta.is_online:
            self._defer(changes, "offline")
            return
        user_id = self._session.remote_user_id
        if user_id is None:
            self._defer(changes, "no remote session")
            return
        if self._spawn(self._mirror(changes, user_id)) is None:
            self._defer(changes, "no event loop")

    def _defer(self, changes: ChangeSet, reason: str) -> None:
        self.meta.pending_sync = True
        self.events.publish(SyncEventBuilder.mirror_deferred(reason, len(changes)))

    async def _mirror(self, changes: ChangeSet, user_id: str) -> None:
        async with self._lock:
            for write in changes:
                try:
                    await self._apply_write(user_id, write)
                except Exception as e:
                    if self._handle_write_failure(changes.operation, write, e) is ErrorClass.TRANSIENT:
                        # The rest goes out with the next full sync
                        return
                else:
                    self.mark_online_from_remote_success()

    async def _apply_write(self, user_id: str, write: DocumentWrite) -> None:
        if isinstance(write, Upsert):
            document = to_remote_document(write.collection, write.model, user_id)
            await self._remote.set_document(user_id, write.collection, write.doc_id, document)
        elif isinstance(write, Patch):
            await self._remote.update_document(
                user_id, write.collection, write.doc_id, fields_to_document(write.fields)
            )
        elif isinstance(write, Delete):
            await self._remote.delete_document(user_id, write.collection, write.doc_id)

    def _handle_write_failure(self, operation: str, write: DocumentWrite, exc: Exception) -> ErrorClass:
        kind = error_kind(exc)
        error_class = classify_error(exc)
        collection = write.collection.value

        if error_class is ErrorClass.TRANSIENT:
            self.meta.pending_sync = True
            self._mark_offline()
            self.events.publish(
                SyncEventBuilder.remote_write_transient_failure(collection, write.doc_id, kind.value, str(exc))
            )
            self._spawn(self.update_online_status())
        else:
            self.failed_changes.append(
                FailedChange(
                    operation=operation,
                    collection=collection,
                    document_id=write.doc_id,
                    error_kind=kind.value,
                    error_message=str(exc),
                )
            )
            self.events.publish(
                SyncEventBuilder.remote_write_rejected(collection, write.doc_id, kind.value, str(exc))
            )
        return error_class

    # ------------------------------------------------------------------
    # Full sync / connectivity
    # ------------------------------------------------------------------

    async def sync_data(self) -> bool:
        """
        Push the complete local state to the remote store.

        Runs a deferred reset first. Returns True when the remote store now
        matches local state.
        """
        user_id = self._can_write()
        if user_id is None:
            logger.info("sync_skipped", is_online=self.meta.is_online)
            return False

        async with self._lock:
            self.meta.syncing = True
            self.events.publish(SyncEventBuilder.sync_started(self.meta.reset_pending))
            try:
                if self.meta.reset_pending:
                    await self._delete_all_remote(user_id)
                    self.meta.reset_pending = False
                upserted, deleted = await self._push_state(user_id)
            except Exception as e:
                transient = classify_error(e) is ErrorClass.TRANSIENT
                self.meta.pending_sync = True
                if transient:
                    self._mark_offline()
                self.events.publish(SyncEventBuilder.sync_failed(error_kind(e).value, str(e), transient))
                return False
            finally:
                self.meta.syncing = False

        self.meta.pending_sync = False
        self.failed_changes.clear()
        self.mark_online_from_remote_success()
        self.events.publish(SyncEventBuilder.sync_completed(upserted, deleted))
        return True

    async def _push_state(self, user_id: str) -> tuple[int, int]:
        snapshot = self._store.snapshot()
        local: dict[Collection, list[Any]] = {
            Collection.ENVELOPES: snapshot.envelopes,
            Collection.TRANSACTIONS: snapshot.transactions,
            Collection.DISTRIBUTION_TEMPLATES: snapshot.distribution_templates,
            Collection.APP_SETTINGS: [snapshot.app_settings] if snapshot.app_settings else [],
        }

        upserted = deleted = 0
        for collection, models in local.items():
            remote_ids = {doc.get("id") for doc in await self._remote.list_documents(user_id, collection)}
            local_ids = set()
            for model in models:
                local_ids.add(model.id)
                document = to_remote_document(collection, model, user_id)
                await self._remote.set_document(user_id, collection, model.id, document)
                upserted += 1
            for doc_id in remote_ids - local_ids:
                if doc_id:
                    await self._remote.delete_document(user_id, collection, doc_id)
                    deleted += 1
        return upserted, deleted

    async def update_online_status(self) -> bool:
        """
        Re-check connectivity.

        On a transition to online with work pending, a full sync runs.
        """
        self.meta.testing_connectivity = True
        try:
            online = await self._monitor.check()
        finally:
            self.meta.testing_connectivity = False

        was_online = self.meta.is_online
        if online:
            self.mark_online_from_remote_success()
        else:
            self._mark_offline()

        if online and not was_online and (self.meta.pending_sync or self.meta.reset_pending):
            await self.sync_data()
        return online

    # ------------------------------------------------------------------
    # Reset / import / export
    # ------------------------------------------------------------------

    async def reset_data(self) -> bool:
        """
        Clear every local entity, and the remote copy when possible.

        Returns True if the remote store was cleared too; otherwise the
        remote reset runs with the next successful sync.
        """
        self._store.clear()
        if self._local_cache is not None:
            self._local_cache.clear()

        if self._can_write() is None:
            self.meta.reset_pending = True
            self.events.publish(SyncEventBuilder.reset_deferred())
            self.events.publish(SyncEventBuilder.reset_completed(remote=False))
            return False
        return await self.perform_remote_reset()

    async def perform_remote_reset(self) -> bool:
        """Delete every remote document of the current user."""
        user_id = self._can_write()
        if user_id is None:
            self.meta.reset_pending = True
            self.events.publish(SyncEventBuilder.reset_deferred())
            return False

        async with self._lock:
            try:
                await self._delete_all_remote(user_id)
            except Exception as e:
                transient = classify_error(e) is ErrorClass.TRANSIENT
                self.meta.reset_pending = True
                if transient:
                    self._mark_offline()
                self.events.publish(SyncEventBuilder.sync_failed(error_kind(e).value, str(e), transient))
                return False

        self.meta.reset_pending = False
        self.mark_online_from_remote_success()
        self.events.publish(SyncEventBuilder.reset_completed(remote=True))
        return True

    async def _delete_all_remote(self, user_id: str) -> None:
        for collection in Collection:
            for document in await self._remote.list_documents(user_id, collection):
                await self._remote.delete_document(user_id, collection, document["id"])

    async def import_data(self, data: Any) -> ImportResult:
        """
        Replace the whole ledger with a backup payload.

        Nothing changes unless the payload is valid as a whole.
        """
        try:
            snapshot = parse_snapshot(data)
        except SnapshotError as e:
            self.events.publish(SyncEventBuilder.import_rejected(str(e)))
            return ImportResult(success=False, message=str(e))

        if snapshot.app_settings is None:
            snapshot = snapshot.model_copy(update={"app_settings": self._store.app_settings})

        self._store.load_snapshot(snapshot)
        self._save_local_cache()

        envelopes, transactions = len(snapshot.envelopes), len(snapshot.transactions)
        self.events.publish(SyncEventBuilder.import_completed(envelopes, transactions))

        message = f"Imported {envelopes} envelopes and {transactions} transactions"
        if self._can_write() is None:
            self.meta.pending_sync = True
            message += " (will sync when online)"
        elif not await self.sync_data():
            message += " (remote sync pending)"

        return ImportResult(
            success=True,
            message=message,
            envelope_count=envelopes,
            transaction_count=transactions,
        )

    def export_data(self) -> dict:
        """Backup payload of the current ledger."""
        return export_snapshot(self._store.snapshot(), self._clock())

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def initialize_app_settings(self) -> AppSettings:
        user = self._session.current_user
        return self._store.initialize_app_settings(user.id if user else None)

    def update_app_settings(self, **fields: Any) -> AppSettings:
        if self._store.app_settings is None:
            self.initialize_app_settings()
        return self._store.update_app_settings(**fields)

    # ------------------------------------------------------------------
    # Real-time remote changes
    # ------------------------------------------------------------------

    async def start_realtime(self) -> bool:
        """Subscribe to remote collection snapshots. Returns False without a live user."""
        user_id = self._can_write()
        if user_id is None:
            return False
        self.stop_realtime()

        for collection in REALTIME_COLLECTIONS:
            try:
                subscription = await self._remote.subscribe(
                    user_id,
                    collection,
                    lambda documents, collection=collection: self.on_remote_snapshot(collection, documents),
                    on_error=self._on_subscription_error,
                )
            except Exception as e:
                self.stop_realtime()
                self.events.publish(SyncEventBuilder.remote_load_failed(error_kind(e).value, str(e)))
                if classify_error(e) is ErrorClass.TRANSIENT:
                    self._mark_offline()
                return False
            self._subscriptions.append(subscription)

        logger.info("realtime_started", collections=len(self._subscriptions))
        return True

    def stop_realtime(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    @property
    def realtime_active(self) -> bool:
        return any(subscription.active for subscription in self._subscriptions)

    def on_remote_snapshot(self, collection: Collection, documents: list[dict]) -> None:
        """
        Apply one remote collection snapshot (last writer wins per id).

        Ignored while local changes are pending or being written, since local
        state is newer than anything the remote can tell us then.
        """
        if self.meta.pending_sync or self.meta.reset_pending:
            self.events.publish(SyncEventBuilder.remote_snapshot_skipped(collection.value, "local changes pending"))
            return
        if self._tasks or self._lock.locked():
            self.events.publish(SyncEventBuilder.remote_snapshot_skipped(collection.value, "local writes in flight"))
            return

        try:
            models = [from_remote_document(collection, document) for document in documents]
        except ValidationError as e:
            self.events.publish(
                SyncEventBuilder.remote_snapshot_skipped(collection.value, f"malformed document: {e.error_count()} error(s)")
            )
            return

        self._store.replace_collection(collection, models)
        self.mark_online_from_remote_success()
        self._save_local_cache()
        self.events.publish(SyncEventBuilder.remote_snapshot_applied(collection.value, len(models)))

    def _on_subscription_error(self, exc: Exception) -> None:
        if classify_error(exc) is ErrorClass.TRANSIENT:
            self._mark_offline()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def on_auth_decision(self, decision: AuthDecision) -> None:
        """
        Session listener: a different or absent user means the local ledger goes.

        A live sign-in while online pushes anything left pending, such as
        edits made during an offline grace session.
        """
        user_id = decision.user.id if decision.is_authenticated and decision.user else None
        if self._active_user_id is not None and user_id != self._active_user_id:
            self.handle_user_logout()
        if user_id is not None:
            self._active_user_id = user_id

        pending = self.meta.pending_sync or self.meta.reset_pending
        if decision.has_remote_session and self.meta.is_online and pending:
            logger.info("sync_after_sign_in", user_id=user_id)
            self._spawn(self.sync_data())

    def handle_user_logout(self) -> None:
        """Stop following the remote, drop local data and reset sync flags."""
        self.stop_realtime()
        self._store.clear()
        if self._local_cache is not None:
            self._local_cache.clear()
        self.failed_changes.clear()
        self.meta = SyncMeta(is_online=self.meta.is_online)
        self._active_user_id = None
        self.events.publish(SyncEventBuilder.user_logged_out())
