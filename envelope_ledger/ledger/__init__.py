"""
Ledger Consistency Engine

The in-memory, authoritative budget model and its invariants.
"""

from envelope_ledger.ledger.balance import find_balance_drift, replay_balances
from envelope_ledger.ledger.changes import ChangeSet, Delete, Patch, Upsert
from envelope_ledger.ledger.errors import (
    EnvelopeNotFoundError,
    InvalidAmountError,
    InvalidEnvelopeError,
    InvalidTemplateError,
    InvalidTransferError,
    LedgerError,
    TemplateNotFoundError,
    TransactionNotFoundError,
)
from envelope_ledger.ledger.store import LedgerStore
from envelope_ledger.ledger.transfers import find_transfer_pair

__all__ = [
    "LedgerStore",
    # Change sets
    "ChangeSet",
    "Delete",
    "Patch",
    "Upsert",
    # Balance replay
    "find_balance_drift",
    "replay_balances",
    "find_transfer_pair",
    # Exceptions
    "EnvelopeNotFoundError",
    "InvalidAmountError",
    "InvalidEnvelopeError",
    "InvalidTemplateError",
    "InvalidTransferError",
    "LedgerError",
    "TemplateNotFoundError",
    "TransactionNotFoundError",
]
