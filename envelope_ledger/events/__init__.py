"""Sync event channel."""

from envelope_ledger.events.logger import SyncEventLog

__all__ = ["SyncEventLog"]
