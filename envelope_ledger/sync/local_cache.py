"""
Local Ledger Cache

Keeps a copy of the ledger on disk so a restart while offline still finds the
user's last state. The cache is a change listener on the store: after every
committed operation the whole snapshot is written.

Writes go to a temporary file first and are moved into place, so a crash
mid-write leaves the previous copy intact.
"""

import json
import os
from pathlib import Path
from typing import Optional

import structlog

from envelope_ledger.ledger.changes import ChangeSet
from envelope_ledger.ledger.store import LedgerStore
from envelope_ledger.models.ledger import LedgerSnapshot
from envelope_ledger.sync.snapshots import SnapshotError, export_snapshot, parse_snapshot


logger = structlog.get_logger(__name__)


class LocalLedgerCache:
    """JSON file copy of the ledger."""

    def __init__(self, path: str):
        self._path = Path(path)
        self._store: Optional[LedgerStore] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[LedgerSnapshot]:
        """
        The cached snapshot, or None when there is no cache yet.

        Raises:
            SnapshotError: If the cache file is unreadable or malformed
        """
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SnapshotError(f"Could not read local cache {self._path}: {e}")

        # appSettings is not part of a backup export but parses the same way
        return parse_snapshot(data)

    def save(self, snapshot: LedgerSnapshot) -> None:
        payload = export_snapshot(snapshot)
        if snapshot.app_settings is not None:
            payload["appSettings"] = snapshot.app_settings.to_document()

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()

    # ------------------------------------------------------------------
    # Store wiring
    # ------------------------------------------------------------------

    def attach(self, store: LedgerStore) -> None:
        """Write the store to disk after every committed operation."""
        self._store = store
        store.add_listener(self.on_ledger_change)

    def detach(self) -> None:
        if self._store is not None:
            self._store.remove_listener(self.on_ledger_change)
            self._store = None

    def on_ledger_change(self, changes: ChangeSet) -> None:
        if self._store is None:
            return
        self.save(self._store.snapshot())
        logger.debug("local_cache_saved", operation=changes.operation, path=str(self._path))
