"""
Balance replay.

An envelope's cached ``current_balance`` is a materialized view over the
transactions that reference it. These helpers recompute it from scratch.
"""

from collections.abc import Iterable
from decimal import Decimal

from envelope_ledger.models.ledger import Envelope, Transaction

ZERO = Decimal("0")


def replay_balances(
    transactions: Iterable[Transaction],
    envelope_ids: Iterable[str] = (),
) -> dict[str, Decimal]:
    """
    Sum signed transaction amounts per envelope.

    Every id in ``envelope_ids`` is present in the result, at zero when no
    transaction references it.
    """
    balances = {envelope_id: ZERO for envelope_id in envelope_ids}
    for tx in transactions:
        balances[tx.envelope_id] = balances.get(tx.envelope_id, ZERO) + tx.signed_amount
    return balances


def find_balance_drift(
    envelopes: Iterable[Envelope],
    transactions: Iterable[Transaction],
) -> dict[str, tuple[Decimal, Decimal]]:
    """Return ``{envelope_id: (cached, replayed)}`` for every mismatch."""
    envelopes = list(envelopes)
    replayed = replay_balances(transactions, (env.id for env in envelopes))
    return {
        env.id: (env.current_balance, replayed[env.id])
        for env in envelopes
        if env.current_balance != replayed[env.id]
    }


def add_delta(deltas: dict[str, Decimal], envelope_id: str, amount: Decimal) -> None:
    """Accumulate a balance change so each envelope is written once."""
    deltas[envelope_id] = deltas.get(envelope_id, ZERO) + amount
