"""
Change Sets

A ChangeSet describes one committed store mutation as the list of document
writes needed to mirror it remotely. The store builds one per operation and
hands it to its change listeners after the commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel

from envelope_ledger.models.documents import Collection


@dataclass(frozen=True)
class Upsert:
    """Create-or-replace a whole document."""

    collection: Collection
    model: BaseModel

    @property
    def doc_id(self) -> str:
        return self.model.id


@dataclass(frozen=True)
class Patch:
    """Field-level partial update; ``fields`` uses Python attribute names."""

    collection: Collection
    doc_id: str
    fields: dict[str, Any]


@dataclass(frozen=True)
class Delete:
    collection: Collection
    doc_id: str


DocumentWrite = Union[Upsert, Patch, Delete]


@dataclass
class ChangeSet:
    """Ordered document writes produced by one store operation."""

    operation: str
    writes: list[DocumentWrite] = field(default_factory=list)

    def upsert(self, collection: Collection, model: BaseModel) -> None:
        self.writes.append(Upsert(collection, model))

    def patch(self, collection: Collection, doc_id: str, **fields: Any) -> None:
        self.writes.append(Patch(collection, doc_id, fields))

    def delete(self, collection: Collection, doc_id: str) -> None:
        self.writes.append(Delete(collection, doc_id))

    def __len__(self) -> int:
        return len(self.writes)

    def __iter__(self):
        return iter(self.writes)
