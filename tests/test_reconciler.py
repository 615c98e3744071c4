"""
Integration tests for the sync reconciler.

A real LedgerStore, SessionGate and ConnectivityMonitor are wired to an
InMemoryRemoteStore. Connectivity is a flag read by an injected probe.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from envelope_ledger.config import SessionSettings, SyncSettings
from envelope_ledger.ledger import LedgerStore
from envelope_ledger.models.documents import Collection, to_remote_document
from envelope_ledger.models.events import SyncEventType
from envelope_ledger.models.ledger import (
    Envelope,
    LedgerSnapshot,
    Theme,
    Transaction,
    TransactionType,
)
from envelope_ledger.models.session import User
from envelope_ledger.models.sync import SnapshotSource, SyncStatus
from envelope_ledger.services.connectivity import ConnectivityMonitor
from envelope_ledger.services.storage import InMemoryRemoteStore, RemoteErrorKind
from envelope_ledger.session import SessionGate, SessionStateRepository
from envelope_ledger.sync import EXPORT_VERSION, LocalLedgerCache, SyncReconciler, export_snapshot


T0 = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
ALICE = User(id="user-alice", username="alice@example.com")
BOB = User(id="user-bob", username="bob@example.com")
PROBE_URL = "https://probe.test/status/200"


class Harness:
    """Store, remote, session and monitor wired together."""

    def __init__(
        self,
        local_cache: Optional[LocalLedgerCache] = None,
        fallback_path: Optional[str] = None,
        signed_in: bool = True,
    ):
        self.network_up = True
        self.store = LedgerStore()
        self.remote = InMemoryRemoteStore()
        self.gate = SessionGate(
            settings=SessionSettings(offline_grace_period_days=7),
            repository=SessionStateRepository(None),
            clock=lambda: T0,
        )
        if signed_in:
            self.gate.record_sign_in(ALICE)

        settings = SyncSettings(
            probe_urls=[PROBE_URL],
            probe_timeout_seconds=0.2,
            fallback_snapshot_path=fallback_path,
        )

        async def probe(url: str) -> bool:
            return self.network_up

        self.monitor = ConnectivityMonitor(settings, interface_check=lambda: True, probe=probe)
        self.reconciler = SyncReconciler(
            self.store,
            self.remote,
            self.gate,
            self.monitor,
            settings=settings,
            local_cache=local_cache,
        )

    async def go_online(self) -> None:
        self.network_up = True
        await self.reconciler.update_online_status()

    async def go_offline(self) -> None:
        self.network_up = False
        await self.reconciler.update_online_status()

    def remote_docs(self, collection: Collection, user: User = ALICE) -> dict:
        return self.remote.documents(user.id, collection)

    def event_types(self) -> list[SyncEventType]:
        return [event.event_type for event in self.reconciler.events.history()]

    def writes(self) -> list[tuple]:
        return [call for call in self.remote.calls if call[0] in ("set", "update", "delete")]


def backup_payload(balance: str = "0") -> dict:
    envelope = Envelope(name="Imported", current_balance=Decimal(balance))
    transactions = [
        Transaction(amount=Decimal("30"), envelope_id=envelope.id, type=TransactionType.INCOME),
        Transaction(amount=Decimal("5"), envelope_id=envelope.id, type=TransactionType.EXPENSE),
    ]
    return export_snapshot(LedgerSnapshot(envelopes=[envelope], transactions=transactions))


class TestMirroring:
    """Tests for mirroring local commits to the remote store."""

    def test_online_change_is_mirrored(self):
        """Test that a commit reaches the remote store in the background."""
        h = Harness()

        async def run():
            await h.go_online()
            envelope = h.store.create_envelope("Groceries", 100)
            await h.reconciler.flush()
            return envelope

        envelope = asyncio.run(run())
        documents = h.remote_docs(Collection.ENVELOPES)
        assert documents[envelope.id]["name"] == "Groceries"
        assert documents[envelope.id]["userId"] == ALICE.id
        assert len(h.remote_docs(Collection.TRANSACTIONS)) == 1
        assert h.reconciler.status == SyncStatus.ONLINE

    def test_patch_is_mirrored_as_field_update(self):
        """Test that balance changes go out as partial updates."""
        h = Harness()

        async def run():
            await h.go_online()
            envelope = h.store.create_envelope("Groceries", 100)
            h.store.spend_from_envelope(envelope.id, 40)
            await h.reconciler.flush()
            return envelope

        envelope = asyncio.run(run())
        assert ("update", "envelopes", envelope.id) in h.remote.calls
        assert Decimal(h.remote_docs(Collection.ENVELOPES)[envelope.id]["currentBalance"]) == Decimal("60")

    def test_offline_change_is_deferred(self):
        """Test that offline commits raise pending_sync and send nothing."""
        h = Harness()

        async def run():
            await h.go_offline()
            h.store.create_envelope("Groceries", 100)
            await h.reconciler.flush()

        asyncio.run(run())
        assert h.reconciler.meta.pending_sync is True
        assert h.reconciler.status == SyncStatus.OFFLINE
        assert h.writes() == []
        assert SyncEventType.MIRROR_DEFERRED in h.event_types()

    def test_no_event_loop_defers(self):
        """Test that a commit outside a running loop is deferred, not lost."""
        h = Harness()
        h.reconciler.meta.is_online = True
        h.store.create_envelope("Groceries")
        assert h.reconciler.meta.pending_sync is True
        assert h.writes() == []

    def test_grace_session_never_writes(self):
        """Test that an offline-grace session keeps writes local."""
        h = Harness()

        async def run():
            await h.go_online()
            h.gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=1))
            h.store.create_envelope("Groceries")
            await h.reconciler.flush()

        asyncio.run(run())
        assert h.gate.is_authenticated
        assert h.writes() == []
        assert h.reconciler.meta.pending_sync is True
        assert len(h.store.envelopes) == 1

    def test_reconnect_pushes_pending_changes(self):
        """Test that regaining connectivity runs a full sync."""
        h = Harness()

        async def run():
            await h.go_offline()
            envelope = h.store.create_envelope("Groceries", 100)
            await h.go_online()
            return envelope

        envelope = asyncio.run(run())
        assert envelope.id in h.remote_docs(Collection.ENVELOPES)
        assert h.reconciler.meta.pending_sync is False
        assert h.reconciler.status == SyncStatus.ONLINE
        assert SyncEventType.SYNC_COMPLETED in h.event_types()

    def test_transient_failure_goes_offline(self):
        """Test that a network-shaped failure marks offline and keeps local state."""
        h = Harness()

        async def run():
            await h.go_online()
            h.remote.available = False
            h.network_up = False
            h.store.create_envelope("Groceries", 100)
            await h.reconciler.flush()

        asyncio.run(run())
        assert h.reconciler.meta.is_online is False
        assert h.reconciler.meta.pending_sync is True
        assert len(h.store.envelopes) == 1
        assert SyncEventType.REMOTE_WRITE_TRANSIENT_FAILURE in h.event_types()
        assert h.reconciler.failed_changes == []

    def test_recovery_after_transient_failure(self):
        """Test that the deferred write lands once the remote is back."""
        h = Harness()

        async def run():
            await h.go_online()
            h.remote.available = False
            h.network_up = False
            envelope = h.store.create_envelope("Groceries", 100)
            await h.reconciler.flush()
            h.remote.available = True
            await h.go_online()
            return envelope

        envelope = asyncio.run(run())
        assert envelope.id in h.remote_docs(Collection.ENVELOPES)
        assert h.reconciler.meta.pending_sync is False

    def test_permanent_failure_is_recorded(self):
        """Test that a rejected write is reported and the rest still go out."""
        h = Harness()

        async def run():
            await h.go_online()
            h.remote.inject_failure(RemoteErrorKind.PERMISSION_DENIED)
            envelope = h.store.create_envelope("Groceries", 50)
            await h.reconciler.flush()
            return envelope

        envelope = asyncio.run(run())
        assert h.reconciler.meta.is_online is True
        assert h.reconciler.meta.pending_sync is False
        assert h.store.get_envelope(envelope.id) is not None

        [failed] = h.reconciler.failed_changes
        assert failed.document_id == envelope.id
        assert failed.error_kind == "permission_denied"
        assert failed.operation == "create_envelope"
        assert envelope.id not in h.remote_docs(Collection.ENVELOPES)
        assert len(h.remote_docs(Collection.TRANSACTIONS)) == 1
        assert [e.event_type for e in h.reconciler.events.errors] == [SyncEventType.REMOTE_WRITE_REJECTED]

    def test_app_settings_update_is_mirrored(self):
        """Test that settings are created on demand and patched remotely."""
        h = Harness()

        async def run():
            await h.go_online()
            h.reconciler.update_app_settings(theme="dark")
            await h.reconciler.flush()

        asyncio.run(run())
        assert h.store.app_settings.theme == Theme.DARK
        assert h.store.app_settings.id == ALICE.id
        assert h.remote_docs(Collection.APP_SETTINGS)[ALICE.id]["theme"] == "dark"


class TestFullSync:
    """Tests for sync_data."""

    def test_sync_deletes_remote_extras(self):
        """Test that the full push makes the remote match local state."""
        h = Harness()
        stray = Envelope(name="Stray")
        h.remote_docs(Collection.ENVELOPES)[stray.id] = to_remote_document(Collection.ENVELOPES, stray, ALICE.id)

        async def run():
            await h.go_offline()
            envelope = h.store.create_envelope("Local")
            await h.go_online()
            return envelope

        envelope = asyncio.run(run())
        assert set(h.remote_docs(Collection.ENVELOPES)) == {envelope.id}
        completed = h.reconciler.events.history(SyncEventType.SYNC_COMPLETED)[-1]
        assert completed.details == {"upserted": 1, "deleted": 1}

    def test_sync_skipped_offline(self):
        """Test that sync_data does nothing without connectivity."""
        h = Harness()

        async def run():
            await h.go_offline()
            return await h.reconciler.sync_data()

        assert asyncio.run(run()) is False
        assert h.remote.calls == []

    def test_failed_sync_keeps_pending(self):
        """Test that a failed push leaves pending_sync raised."""
        h = Harness()

        async def run():
            await h.go_offline()
            h.store.create_envelope("Local")
            h.remote.inject_failure(RemoteErrorKind.INVALID_ARGUMENT)
            await h.go_online()

        asyncio.run(run())
        assert h.reconciler.meta.pending_sync is True
        assert h.reconciler.meta.is_online is True
        assert SyncEventType.SYNC_FAILED in h.event_types()


class TestResetImportExport:
    """Tests for reset, import and export."""

    def test_reset_online_clears_both_sides(self):
        """Test reset with connectivity."""
        h = Harness()

        async def run():
            await h.go_online()
            h.store.create_envelope("Groceries", 100)
            await h.reconciler.flush()
            return await h.reconciler.reset_data()

        assert asyncio.run(run()) is True
        assert h.store.envelopes == []
        assert h.remote_docs(Collection.ENVELOPES) == {}
        assert h.remote_docs(Collection.TRANSACTIONS) == {}
        assert h.reconciler.meta.reset_pending is False

    def test_reset_offline_is_deferred(self):
        """Test that an offline reset runs remotely after reconnecting."""
        h = Harness()

        async def run():
            await h.go_online()
            h.store.create_envelope("Groceries", 100)
            await h.reconciler.flush()
            await h.go_offline()
            remote_cleared = await h.reconciler.reset_data()
            pending = h.reconciler.meta.reset_pending
            still_remote = len(h.remote_docs(Collection.ENVELOPES))
            await h.go_online()
            return remote_cleared, pending, still_remote

        remote_cleared, pending, still_remote = asyncio.run(run())
        assert remote_cleared is False
        assert pending is True
        assert still_remote == 1
        assert h.remote_docs(Collection.ENVELOPES) == {}
        assert h.reconciler.meta.reset_pending is False
        assert SyncEventType.RESET_DEFERRED in h.event_types()

    def test_import_online_pushes(self):
        """Test importing a backup and replaying its balances."""
        h = Harness()

        async def run():
            await h.go_online()
            return await h.reconciler.import_data(backup_payload(balance="999"))

        result = asyncio.run(run())
        assert result.success is True
        assert result.message == "Imported 1 envelopes and 2 transactions"
        [envelope] = h.store.envelopes
        assert envelope.current_balance == Decimal("25")
        assert envelope.id in h.remote_docs(Collection.ENVELOPES)
        assert len(h.remote_docs(Collection.TRANSACTIONS)) == 2

    def test_import_offline_sets_pending(self):
        """Test that an offline import waits for connectivity."""
        h = Harness()

        async def run():
            await h.go_offline()
            return await h.reconciler.import_data(backup_payload())

        result = asyncio.run(run())
        assert result.success is True
        assert result.message.endswith("(will sync when online)")
        assert h.reconciler.meta.pending_sync is True

    def test_import_rejects_orphans(self):
        """Test that an invalid backup changes nothing."""
        h = Harness()
        h.store.create_envelope("Existing", 10)
        payload = backup_payload()
        payload["envelopes"] = []

        result = asyncio.run(h.reconciler.import_data(payload))

        assert result.success is False
        assert result.message.startswith("Invalid data format")
        assert [e.name for e in h.store.envelopes] == ["Existing"]
        assert SyncEventType.IMPORT_REJECTED in h.event_types()

    def test_import_keeps_existing_settings(self):
        """Test that a backup without settings keeps the current ones."""
        h = Harness()
        h.store.initialize_app_settings(ALICE.id)
        asyncio.run(h.reconciler.import_data(backup_payload()))
        assert h.store.app_settings.id == ALICE.id

    def test_export(self):
        """Test the backup payload shape."""
        h = Harness()
        envelope = h.store.create_envelope("Groceries", 10)
        payload = h.reconciler.export_data()
        assert payload["version"] == EXPORT_VERSION
        assert [e["id"] for e in payload["envelopes"]] == [envelope.id]
        assert len(payload["transactions"]) == 1
        assert "exportDate" in payload


class TestRealtime:
    """Tests for remote snapshot subscriptions."""

    def test_remote_change_is_applied(self):
        """Test that a remote write from another device lands locally."""
        h = Harness()
        other = Envelope(name="From phone")

        async def run():
            await h.go_online()
            assert await h.reconciler.start_realtime() is True
            await h.remote.set_document(
                ALICE.id,
                Collection.ENVELOPES,
                other.id,
                to_remote_document(Collection.ENVELOPES, other, ALICE.id),
            )

        asyncio.run(run())
        assert h.store.get_envelope(other.id) is not None
        assert h.reconciler.realtime_active
        assert SyncEventType.REMOTE_SNAPSHOT_APPLIED in h.event_types()

        h.reconciler.stop_realtime()
        assert not h.reconciler.realtime_active

    def test_snapshot_ignored_while_pending(self):
        """Test that local pending work is not overwritten by the remote."""
        h = Harness()
        other = Envelope(name="From phone")

        async def run():
            await h.go_online()
            await h.reconciler.start_realtime()
            h.reconciler.meta.pending_sync = True
            await h.remote.set_document(
                ALICE.id,
                Collection.ENVELOPES,
                other.id,
                to_remote_document(Collection.ENVELOPES, other, ALICE.id),
            )

        asyncio.run(run())
        assert h.store.get_envelope(other.id) is None
        assert SyncEventType.REMOTE_SNAPSHOT_SKIPPED in h.event_types()

    def test_malformed_snapshot_ignored(self):
        """Test that a document that doesn't parse leaves local state alone."""
        h = Harness()
        h.store.create_envelope("Local")

        async def run():
            await h.go_online()
            await h.reconciler.flush()
            await h.reconciler.start_realtime()
            await h.remote.set_document(ALICE.id, Collection.ENVELOPES, "bad", {"id": "bad"})

        asyncio.run(run())
        assert [e.name for e in h.store.envelopes] == ["Local"]

    def test_realtime_needs_live_user(self):
        """Test that realtime does not start offline."""
        h = Harness()

        async def run():
            await h.go_offline()
            return await h.reconciler.start_realtime()

        assert asyncio.run(run()) is False


class TestSessionChanges:
    """Tests for user switches."""

    def test_sign_out_clears_local_data(self):
        """Test that signing out drops the ledger and sync flags."""
        h = Harness()
        h.store.create_envelope("Groceries", 10)
        h.reconciler.meta.pending_sync = True

        h.gate.sign_out()

        assert h.store.envelopes == []
        assert h.reconciler.meta.pending_sync is False
        assert SyncEventType.USER_LOGGED_OUT in h.event_types()

    def test_switching_user_clears_local_data(self):
        """Test that another user never sees the previous ledger."""
        h = Harness()
        h.store.create_envelope("Groceries", 10)

        h.gate.record_sign_in(BOB)

        assert h.store.envelopes == []
        assert h.gate.remote_user_id == BOB.id

    def test_same_user_keeps_data(self):
        """Test that re-confirming the same user keeps the ledger."""
        h = Harness()
        h.store.create_envelope("Groceries", 10)
        h.gate.record_sign_in(ALICE)
        assert len(h.store.envelopes) == 1

    def test_sign_in_after_grace_session_pushes_edits(self):
        """Test that edits made under the offline grace window go out on live sign-in."""
        h = Harness()

        async def run():
            await h.go_online()
            envelope = h.store.create_envelope("Groceries", 10)
            await h.reconciler.flush()

            await h.go_offline()
            h.gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=1))
            h.store.add_to_envelope(envelope.id, 5)
            await h.go_online()
            assert h.reconciler.meta.pending_sync is True

            h.gate.record_sign_in(ALICE, now=T0 + timedelta(days=1))
            await h.reconciler.flush()
            return envelope

        envelope = asyncio.run(run())
        remote_envelope = h.remote_docs(Collection.ENVELOPES)[envelope.id]
        assert Decimal(remote_envelope["currentBalance"]) == Decimal("15")
        assert len(h.remote_docs(Collection.TRANSACTIONS)) == 2
        assert h.reconciler.meta.pending_sync is False
        assert len(h.store.envelopes) == 1

    def test_sign_in_while_offline_waits_for_reconnect(self):
        """Test that a live sign-in without connectivity leaves the work pending."""
        h = Harness()

        async def run():
            await h.go_offline()
            h.store.create_envelope("Groceries", 10)
            h.gate.record_sign_in(ALICE)
            await h.reconciler.flush()

        asyncio.run(run())
        assert h.reconciler.meta.pending_sync is True
        assert h.writes() == []


class TestStartup:
    """Tests for fetch_data and start."""

    def test_start_loads_remote(self):
        """Test that remote data is loaded, replayed and followed."""
        h = Harness()
        envelope = Envelope(name="Rent", current_balance=Decimal("999"))
        income = Transaction(amount=Decimal("40"), envelope_id=envelope.id, type=TransactionType.INCOME)
        h.remote_docs(Collection.ENVELOPES)[envelope.id] = to_remote_document(
            Collection.ENVELOPES, envelope, ALICE.id
        )
        h.remote_docs(Collection.TRANSACTIONS)[income.id] = to_remote_document(
            Collection.TRANSACTIONS, income, ALICE.id
        )

        async def run():
            source = await h.reconciler.start()
            await h.reconciler.flush()
            return source

        assert asyncio.run(run()) is SnapshotSource.REMOTE
        assert h.store.get_envelope(envelope.id).current_balance == Decimal("40")
        assert h.store.app_settings.id == ALICE.id
        assert ALICE.id in h.remote_docs(Collection.APP_SETTINGS)
        assert h.reconciler.realtime_active
        assert SyncEventType.BALANCE_DRIFT_CORRECTED in h.event_types()

    def test_remote_failure_falls_back(self, tmp_path):
        """Test that an unreachable remote uses the fallback snapshot."""
        fallback = tmp_path / "fallback.json"
        fallback.write_text(json.dumps(backup_payload()), encoding="utf-8")
        h = Harness(fallback_path=str(fallback))
        h.remote.available = False

        async def run():
            await h.go_online()
            return await h.reconciler.fetch_data()

        assert asyncio.run(run()) is SnapshotSource.FALLBACK
        assert [e.name for e in h.store.envelopes] == ["Imported"]
        assert h.reconciler.meta.is_online is False
        assert SyncEventType.REMOTE_LOAD_FAILED in h.event_types()

    def test_offline_prefers_local_cache(self, tmp_path):
        """Test that the last local state wins over the fallback."""
        fallback = tmp_path / "fallback.json"
        fallback.write_text(json.dumps(backup_payload()), encoding="utf-8")
        cache = LocalLedgerCache(str(tmp_path / "cache.json"))
        cached = Envelope(name="Cached")
        cache.save(LedgerSnapshot(envelopes=[cached], transactions=[]))
        h = Harness(local_cache=cache, fallback_path=str(fallback))

        async def run():
            await h.go_offline()
            return await h.reconciler.fetch_data()

        assert asyncio.run(run()) is SnapshotSource.LOCAL_CACHE
        assert [e.id for e in h.store.envelopes] == [cached.id]

    def test_offline_without_snapshots_is_empty(self):
        """Test the empty start."""
        h = Harness()

        async def run():
            await h.go_offline()
            return await h.reconciler.fetch_data()

        assert asyncio.run(run()) is SnapshotSource.EMPTY
        assert h.store.envelopes == []

    def test_fetch_keeps_unsynced_local_state(self, tmp_path):
        """Test that local edits are never replaced by the fallback."""
        fallback = tmp_path / "fallback.json"
        fallback.write_text(json.dumps(backup_payload()), encoding="utf-8")
        h = Harness(fallback_path=str(fallback))

        async def run():
            await h.go_offline()
            h.store.create_envelope("Mine")
            return await h.reconciler.fetch_data()

        asyncio.run(run())
        assert [e.name for e in h.store.envelopes] == ["Mine"]

    def test_local_cache_follows_store(self, tmp_path):
        """Test that every commit is written to the local cache."""
        cache = LocalLedgerCache(str(tmp_path / "cache.json"))
        h = Harness(local_cache=cache)
        envelope = h.store.create_envelope("Groceries", 10)

        restored = cache.load()
        assert [e.id for e in restored.envelopes] == [envelope.id]
        assert restored.envelopes[0].current_balance == Decimal("10")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
