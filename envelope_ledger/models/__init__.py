"""
Data Models Package

This package contains all Pydantic models used by the envelope ledger.
All data flowing through the system must conform to these schemas.
"""

from envelope_ledger.models.ledger import (
    AppSettings,
    DistributionTemplate,
    Envelope,
    LedgerSnapshot,
    Theme,
    Transaction,
    TransactionType,
    utc_now,
)
from envelope_ledger.models.documents import (
    Collection,
    from_remote_document,
    to_remote_document,
)
from envelope_ledger.models.events import (
    SyncEvent,
    SyncEventBuilder,
    SyncEventType,
    SyncSeverity,
)
from envelope_ledger.models.session import AuthDecision, SessionState, User
from envelope_ledger.models.sync import (
    FailedChange,
    ImportResult,
    SnapshotSource,
    SyncMeta,
    SyncStatus,
)

__all__ = [
    # Ledger models
    "AppSettings",
    "DistributionTemplate",
    "Envelope",
    "LedgerSnapshot",
    "Theme",
    "Transaction",
    "TransactionType",
    "utc_now",
    # Remote documents
    "Collection",
    "from_remote_document",
    "to_remote_document",
    # Sync events
    "SyncEvent",
    "SyncEventBuilder",
    "SyncEventType",
    "SyncSeverity",
    # Session models
    "AuthDecision",
    "SessionState",
    "User",
    # Sync models
    "FailedChange",
    "ImportResult",
    "SnapshotSource",
    "SyncMeta",
    "SyncStatus",
]
