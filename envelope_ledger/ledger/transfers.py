"""
Transfer pairing.

A transfer is exactly two transactions sharing one ``transfer_id``: an Expense
leg on the source envelope and an Income leg on the destination, same amount,
same date. Legs are only ever created together and deleted together.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Optional

from envelope_ledger.ledger.errors import InvalidTransferError
from envelope_ledger.models.ledger import (
    Envelope,
    Transaction,
    TransactionType,
    new_id,
)


def describe_leg(direction: str, counterpart: str, note: str = "") -> str:
    description = f"Transfer {direction} {counterpart}"
    if note:
        description += f" ({note})"
    return description


def build_transfer_legs(
    source: Envelope,
    destination: Envelope,
    amount: Decimal,
    note: str,
    when: datetime,
) -> tuple[Transaction, Transaction]:
    """Return ``(expense_leg, income_leg)`` for a transfer."""
    if source.id == destination.id:
        raise InvalidTransferError("Cannot transfer an envelope to itself")

    transfer_id = new_id()
    note = (note or "").strip()

    expense_leg = Transaction(
        date=when,
        amount=amount,
        description=describe_leg("to", destination.name, note),
        envelope_id=source.id,
        type=TransactionType.EXPENSE,
        transfer_id=transfer_id,
    )
    income_leg = Transaction(
        date=when,
        amount=amount,
        description=describe_leg("from", source.name, note),
        envelope_id=destination.id,
        type=TransactionType.INCOME,
        transfer_id=transfer_id,
    )
    return expense_leg, income_leg


def find_transfer_pair(
    transactions: Iterable[Transaction],
    leg: Transaction,
) -> Optional[Transaction]:
    """The other leg of ``leg``'s transfer, or None."""
    if leg.transfer_id is None:
        return None
    for tx in transactions:
        if tx.transfer_id == leg.transfer_id and tx.id != leg.id:
            return tx
    return None
