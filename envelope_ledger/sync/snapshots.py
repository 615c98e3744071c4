"""
Snapshot Files

Backup export/import and the bundled fallback snapshot all share one JSON
shape:

    {
        "envelopes": [...],
        "transactions": [...],
        "distributionTemplates": [...],   # optional
        "exportDate": "...",              # optional
        "version": "1.0"                  # optional
    }

A snapshot is either accepted whole or rejected whole.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from envelope_ledger.models.ledger import LedgerSnapshot, utc_now


EXPORT_VERSION = "1.0"


class SnapshotError(Exception):
    """A snapshot file or payload is malformed."""
    pass


def _describe(e: ValidationError) -> str:
    first = e.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def parse_snapshot(data: Any) -> LedgerSnapshot:
    """
    Validate a snapshot payload.

    Raises:
        SnapshotError: If ``envelopes`` or ``transactions`` is missing or not
            a list, any entry fails to parse, or a transaction references an
            envelope that is not part of the snapshot.
    """
    if not isinstance(data, dict):
        raise SnapshotError("Invalid data format: expected a JSON object")
    for key in ("envelopes", "transactions"):
        if not isinstance(data.get(key), list):
            raise SnapshotError(f"Invalid data format: '{key}' must be a list")

    try:
        snapshot = LedgerSnapshot.model_validate(data)
    except ValidationError as e:
        raise SnapshotError(f"Invalid data format: {_describe(e)}")

    envelope_ids = {env.id for env in snapshot.envelopes}
    if len(envelope_ids) != len(snapshot.envelopes):
        raise SnapshotError("Invalid data format: duplicate envelope ids")

    orphans = sorted({tx.envelope_id for tx in snapshot.transactions} - envelope_ids)
    if orphans:
        raise SnapshotError(
            f"Invalid data format: transactions reference unknown envelopes {orphans}"
        )

    return snapshot


def load_fallback_snapshot(path: Optional[str]) -> Optional[LedgerSnapshot]:
    """
    Read the bundled fallback snapshot.

    Returns None when no path is configured or the file does not exist.

    Raises:
        SnapshotError: If the file exists but cannot be read or parsed
    """
    if not path:
        return None
    file = Path(path)
    if not file.exists():
        return None
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SnapshotError(f"Could not read fallback snapshot {path}: {e}")
    return parse_snapshot(data)


def export_snapshot(snapshot: LedgerSnapshot, exported_at: Optional[datetime] = None) -> dict:
    """Build the backup payload for a snapshot."""
    return {
        "envelopes": [env.to_document() for env in snapshot.envelopes],
        "transactions": [tx.to_document() for tx in snapshot.transactions],
        "distributionTemplates": [t.to_document() for t in snapshot.distribution_templates],
        "exportDate": (exported_at or utc_now()).isoformat(),
        "version": EXPORT_VERSION,
    }
