"""
Sync Event Models

Everything the reconciler does against the outside world is recorded as a
SyncEvent: snapshot loads, remote writes that were deferred or rejected,
full syncs, resets, imports, connectivity transitions.

DESIGN DECISION: Remote errors happen after the caller has already received
its local result, so they cannot be raised back to that caller. They are
published as events instead, and the event log is the reconciler's error
channel.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from envelope_ledger.models.ledger import utc_now


class SyncEventType(str, Enum):
    """Types of events the reconciler records."""
    # Startup
    SNAPSHOT_LOADED = "snapshot_loaded"
    REMOTE_LOAD_FAILED = "remote_load_failed"
    BALANCE_DRIFT_CORRECTED = "balance_drift_corrected"

    # Mirroring of local mutations
    MIRROR_DEFERRED = "mirror_deferred"
    REMOTE_WRITE_TRANSIENT_FAILURE = "remote_write_transient_failure"
    REMOTE_WRITE_REJECTED = "remote_write_rejected"

    # Full sync
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"

    # Reset / import
    RESET_COMPLETED = "reset_completed"
    RESET_DEFERRED = "reset_deferred"
    IMPORT_COMPLETED = "import_completed"
    IMPORT_REJECTED = "import_rejected"

    # Real-time updates
    REMOTE_SNAPSHOT_APPLIED = "remote_snapshot_applied"
    REMOTE_SNAPSHOT_SKIPPED = "remote_snapshot_skipped"

    # Environment
    CONNECTIVITY_CHANGED = "connectivity_changed"
    USER_LOGGED_OUT = "user_logged_out"


class SyncSeverity(str, Enum):
    """Severity level for sync events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SyncEvent(BaseModel):
    """A single sync event."""

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utc_now)

    event_type: SyncEventType
    severity: SyncSeverity = SyncSeverity.INFO

    # What document is this about, if any
    collection: Optional[str] = None
    document_id: Optional[str] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == SyncSeverity.ERROR

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "collection": self.collection,
            "document_id": self.document_id,
            "description": self.description,
            "details": self.details,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


class SyncEventBuilder:
    """
    Helper class to build sync events with common patterns.

    Usage:
        event = SyncEventBuilder.mirror_deferred(reason="offline", writes=3)
        event = SyncEventBuilder.remote_write_rejected(collection, doc_id, kind, msg)
    """

    @staticmethod
    def snapshot_loaded(
        source: str,
        envelopes: int,
        transactions: int,
        templates: int,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.SNAPSHOT_LOADED,
            description=f"Ledger loaded from {source}",
            details={
                "source": source,
                "envelopes": envelopes,
                "transactions": transactions,
                "templates": templates,
            },
        )

    @staticmethod
    def remote_load_failed(error_kind: str, error_message: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REMOTE_LOAD_FAILED,
            severity=SyncSeverity.WARNING,
            description="Could not load ledger from remote store",
            error_kind=error_kind,
            error_message=error_message,
        )

    @staticmethod
    def balance_drift_corrected(drift: dict[str, tuple[str, str]]) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.BALANCE_DRIFT_CORRECTED,
            severity=SyncSeverity.WARNING,
            collection="envelopes",
            description=f"Recomputed {len(drift)} envelope balance(s) from transactions",
            details={
                envelope_id: {"cached": cached, "replayed": replayed}
                for envelope_id, (cached, replayed) in drift.items()
            },
        )

    @staticmethod
    def mirror_deferred(reason: str, writes: int) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.MIRROR_DEFERRED,
            description=f"Remote write deferred: {reason}",
            details={"reason": reason, "writes": writes},
        )

    @staticmethod
    def remote_write_transient_failure(
        collection: str,
        document_id: str,
        error_kind: str,
        error_message: str,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REMOTE_WRITE_TRANSIENT_FAILURE,
            severity=SyncSeverity.WARNING,
            collection=collection,
            document_id=document_id,
            description="Remote write failed, marked for sync on reconnect",
            error_kind=error_kind,
            error_message=error_message,
        )

    @staticmethod
    def remote_write_rejected(
        collection: str,
        document_id: str,
        error_kind: str,
        error_message: str,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REMOTE_WRITE_REJECTED,
            severity=SyncSeverity.ERROR,
            collection=collection,
            document_id=document_id,
            description="Remote store rejected a write; local state kept",
            error_kind=error_kind,
            error_message=error_message,
        )

    @staticmethod
    def sync_started(reset_first: bool) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.SYNC_STARTED,
            description="Pushing local ledger to remote store",
            details={"reset_first": reset_first},
        )

    @staticmethod
    def sync_completed(upserted: int, deleted: int) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.SYNC_COMPLETED,
            description=f"Sync completed: {upserted} written, {deleted} removed",
            details={"upserted": upserted, "deleted": deleted},
        )

    @staticmethod
    def sync_failed(error_kind: str, error_message: str, transient: bool) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.SYNC_FAILED,
            severity=SyncSeverity.WARNING if transient else SyncSeverity.ERROR,
            description="Sync failed" + (" (will retry)" if transient else ""),
            error_kind=error_kind,
            error_message=error_message,
            details={"transient": transient},
        )

    @staticmethod
    def reset_completed(remote: bool) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.RESET_COMPLETED,
            description="Ledger data reset" + (" locally and remotely" if remote else " locally"),
            details={"remote": remote},
        )

    @staticmethod
    def reset_deferred() -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.RESET_DEFERRED,
            description="Remote reset deferred until connectivity returns",
        )

    @staticmethod
    def import_completed(envelopes: int, transactions: int) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.IMPORT_COMPLETED,
            description=f"Imported {envelopes} envelopes and {transactions} transactions",
            details={"envelopes": envelopes, "transactions": transactions},
        )

    @staticmethod
    def import_rejected(reason: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.IMPORT_REJECTED,
            severity=SyncSeverity.WARNING,
            description="Backup import rejected",
            error_message=reason,
        )

    @staticmethod
    def remote_snapshot_applied(collection: str, documents: int) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REMOTE_SNAPSHOT_APPLIED,
            severity=SyncSeverity.DEBUG,
            collection=collection,
            description=f"Applied remote {collection} snapshot",
            details={"documents": documents},
        )

    @staticmethod
    def remote_snapshot_skipped(collection: str, reason: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REMOTE_SNAPSHOT_SKIPPED,
            severity=SyncSeverity.DEBUG,
            collection=collection,
            description=f"Ignored remote {collection} snapshot: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def connectivity_changed(is_online: bool) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.CONNECTIVITY_CHANGED,
            description="Connectivity restored" if is_online else "Connectivity lost",
            details={"is_online": is_online},
        )

    @staticmethod
    def user_logged_out() -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.USER_LOGGED_OUT,
            description="Local ledger cleared after sign-out",
        )
