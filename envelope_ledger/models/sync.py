"""
Sync Models

State and result types exposed by the sync reconciler.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from envelope_ledger.models.ledger import utc_now


class SyncStatus(str, Enum):
    """
    Reconciler state, derived from the SyncMeta flags.

    OFFLINE wins over everything: nothing reaches the remote store.
    SYNCING is a full push in progress.
    PENDING_SYNC means local state has diverged and awaits a push.
    """
    OFFLINE = "offline"
    ONLINE = "online"
    SYNCING = "syncing"
    PENDING_SYNC = "pending_sync"


class SnapshotSource(str, Enum):
    """Where the initial ledger state came from at startup."""
    REMOTE = "remote"
    LOCAL_CACHE = "local_cache"
    FALLBACK = "fallback"
    EMPTY = "empty"


class SyncMeta(BaseModel):
    """Process-wide control flags."""

    is_online: bool = False
    pending_sync: bool = False
    reset_pending: bool = False
    testing_connectivity: bool = False
    syncing: bool = False

    @property
    def status(self) -> SyncStatus:
        if not self.is_online:
            return SyncStatus.OFFLINE
        if self.syncing:
            return SyncStatus.SYNCING
        if self.pending_sync or self.reset_pending:
            return SyncStatus.PENDING_SYNC
        return SyncStatus.ONLINE


class ImportResult(BaseModel):
    """Outcome of importing a backup file."""

    success: bool
    message: str
    envelope_count: int = Field(default=0, ge=0)
    transaction_count: int = Field(default=0, ge=0)


class FailedChange(BaseModel):
    """A remote write the store refused; local state was kept."""

    operation: str
    collection: str
    document_id: str
    error_kind: str
    error_message: str
    failed_at: datetime = Field(default_factory=utc_now)
