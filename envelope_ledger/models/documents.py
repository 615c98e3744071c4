"""
Remote Document Mapping

Converts ledger models to and from the documents kept in the remote store.

The remote shape differs from the backup-file shape in a few places:
- transaction ``type`` is lowercased (``income`` / ``expense``)
- amounts and balances are decimal strings, never floats
- every document is stamped with the owning ``userId``
- ``transferId`` is always present (null when the transaction is not a leg)
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from envelope_ledger.models.ledger import (
    AppSettings,
    DistributionTemplate,
    Envelope,
    Transaction,
)


class Collection(str, Enum):
    """Remote collections, one per entity kind, namespaced per user."""
    ENVELOPES = "envelopes"
    TRANSACTIONS = "transactions"
    DISTRIBUTION_TEMPLATES = "distributionTemplates"
    APP_SETTINGS = "appSettings"

    @property
    def model(self) -> type[BaseModel]:
        return _COLLECTION_MODELS[self]


_COLLECTION_MODELS: dict[Collection, type[BaseModel]] = {
    Collection.ENVELOPES: Envelope,
    Collection.TRANSACTIONS: Transaction,
    Collection.DISTRIBUTION_TEMPLATES: DistributionTemplate,
    Collection.APP_SETTINGS: AppSettings,
}


def transaction_to_document(tx: Transaction, user_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": tx.id,
        "userId": user_id,
        "envelopeId": tx.envelope_id,
        "amount": str(tx.amount),
        "date": tx.date.isoformat(),
        "description": tx.description,
        "reconciled": tx.reconciled,
        "type": tx.type.value.lower(),
        "transferId": tx.transfer_id,
    }


def transaction_from_document(data: dict[str, Any]) -> Transaction:
    return Transaction.model_validate(
        {
            "id": data.get("id"),
            "envelopeId": data.get("envelopeId") or "",
            "amount": str(data.get("amount", "0")),
            "date": data.get("date"),
            "description": data.get("description") or "",
            "reconciled": bool(data.get("reconciled", False)),
            "type": data.get("type"),
            "transferId": data.get("transferId") or None,
        }
    )


def to_remote_document(
    collection: Collection,
    model: BaseModel,
    user_id: Optional[str] = None,
) -> dict[str, Any]:
    """Serialize a ledger model into its remote document."""
    if collection is Collection.TRANSACTIONS:
        return transaction_to_document(model, user_id)

    document = model.model_dump(mode="json", by_alias=True)
    if collection is Collection.APP_SETTINGS:
        document["userId"] = user_id or document.get("userId")
    else:
        document["userId"] = user_id
    return document


def from_remote_document(collection: Collection, data: dict[str, Any]) -> BaseModel:
    """Parse a remote document back into a ledger model."""
    if collection is Collection.TRANSACTIONS:
        return transaction_from_document(data)
    return collection.model.model_validate(data)


def fields_to_document(fields: dict[str, Any]) -> dict[str, Any]:
    """
    Convert a partial update keyed by Python attribute names into wire form.

    Used for field-level updates (balance changes, renames, settings).
    """
    return {to_camel(name): to_jsonable_python(value) for name, value in fields.items()}
