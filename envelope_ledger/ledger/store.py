"""
Ledger State Store

The authoritative in-memory model of one user's budget: envelopes,
transactions, distribution templates and the settings record.

GUARANTEES:
- Every envelope's ``current_balance`` equals the signed sum of the
  transactions referencing it, after every operation.
- Every operation validates all of its input before writing anything, then
  commits in one step. Callers never observe a half-applied operation.
- A transfer's two legs are created together and deleted together.
- Templates only reference existing envelopes.

The store does no I/O. After each commit it hands a ChangeSet to its change
listeners; the sync reconciler is one such listener and decides whether and
how to mirror the change remotely.
"""

from collections.abc import Callable, Iterable, Mapping
from datetime import date as date_type
from datetime import datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError

from envelope_ledger.ledger.balance import (
    ZERO,
    add_delta,
    find_balance_drift,
    replay_balances,
)
from envelope_ledger.ledger.changes import ChangeSet
from envelope_ledger.ledger.errors import (
    EnvelopeNotFoundError,
    InvalidAmountError,
    InvalidEnvelopeError,
    InvalidTemplateError,
    LedgerError,
    TemplateNotFoundError,
    TransactionNotFoundError,
)
from envelope_ledger.ledger.templates import (
    clean_distributions,
    prune_templates,
    rekey_templates,
)
from envelope_ledger.ledger.transfers import build_transfer_legs, find_transfer_pair
from envelope_ledger.models.documents import Collection
from envelope_ledger.models.ledger import (
    AppSettings,
    DistributionTemplate,
    Envelope,
    LedgerSnapshot,
    Transaction,
    TransactionType,
    as_utc,
    new_id,
    utc_now,
)


ChangeListener = Callable[[ChangeSet], None]
DateInput = Union[datetime, date_type, str, None]
AmountInput = Union[Decimal, int, float, str]

INITIAL_BALANCE_DESCRIPTION = "Initial balance"
DEFAULT_DEPOSIT_DESCRIPTION = "Deposit"

logger = structlog.get_logger(__name__)


def parse_decimal(value: AmountInput) -> Decimal:
    """
    Coerce user input to a finite Decimal.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")``.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"Not a valid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Not a valid amount: {value!r}")
    return amount


def to_amount(value: AmountInput, allow_zero: bool = False) -> Decimal:
    """Parse an amount that must be positive (or zero when allowed)."""
    amount = parse_decimal(value)
    if amount < 0 or (amount == 0 and not allow_zero):
        bound = "zero or more" if allow_zero else "greater than zero"
        raise InvalidAmountError(f"Amount must be {bound}, got {amount}")
    return amount


def to_datetime(value: DateInput, default: Callable[[], datetime] = utc_now) -> datetime:
    """Accept a datetime, a date, an ISO string or None (now)."""
    if value is None:
        return default()
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date_type):
        return datetime.combine(value, time(), tzinfo=timezone.utc)
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (AttributeError, ValueError):
        raise LedgerError(f"Not a valid date: {value!r}")


class LedgerStore:
    """
    Dependency-injected state container for the ledger.

    Usage:
        store = LedgerStore(on_change=reconciler.on_ledger_change)
        groceries = store.create_envelope("Groceries", 200)
        store.spend_from_envelope(groceries.id, 35, "Market")
    """

    def __init__(
        self,
        snapshot: Optional[LedgerSnapshot] = None,
        on_change: Optional[ChangeListener] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._envelopes: dict[str, Envelope] = {}
        self._transactions: dict[str, Transaction] = {}
        self._templates: dict[str, DistributionTemplate] = {}
        self._app_settings: Optional[AppSettings] = None
        self._listeners: list[ChangeListener] = []
        self._clock = clock

        if on_change is not None:
            self._listeners.append(on_change)
        if snapshot is not None:
            self.load_snapshot(snapshot)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, changes: ChangeSet) -> None:
        logger.debug("ledger_committed", operation=changes.operation, writes=len(changes))
        for listener in list(self._listeners):
            listener(changes)

    # ------------------------------------------------------------------
    # Read access (records are frozen, so these are safe snapshots)
    # ------------------------------------------------------------------

    @property
    def envelopes(self) -> list[Envelope]:
        """Envelopes in display/allocation order."""
        return sorted(self._envelopes.values(), key=lambda e: e.order_index)

    @property
    def transactions(self) -> list[Transaction]:
        """Transactions, newest first."""
        return sorted(self._transactions.values(), key=lambda t: t.date, reverse=True)

    @property
    def distribution_templates(self) -> list[DistributionTemplate]:
        return list(self._templates.values())

    @property
    def app_settings(self) -> Optional[AppSettings]:
        return self._app_settings

    def get_envelope(self, envelope_id: str) -> Optional[Envelope]:
        return self._envelopes.get(envelope_id)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    def get_template(self, template_id: str) -> Optional[DistributionTemplate]:
        return self._templates.get(template_id)

    def transactions_for(self, envelope_id: str) -> list[Transaction]:
        return [tx for tx in self.transactions if tx.envelope_id == envelope_id]

    def get_envelope_balance(self, envelope_id: str) -> Decimal:
        """Balance recomputed from transactions; zero for unknown envelopes."""
        if envelope_id not in self._envelopes:
            logger.info("envelope_balance_unknown_envelope", envelope_id=envelope_id)
            return ZERO
        return replay_balances(self._transactions.values(), [envelope_id])[envelope_id]

    def total_balance(self) -> Decimal:
        return sum((env.current_balance for env in self._envelopes.values()), ZERO)

    def verify_balances(self) -> dict[str, tuple[Decimal, Decimal]]:
        """``{envelope_id: (cached, replayed)}`` for every inconsistent envelope."""
        return find_balance_drift(self._envelopes.values(), self._transactions.values())

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            envelopes=self.envelopes,
            transactions=self.transactions,
            distribution_templates=self.distribution_templates,
            app_settings=self._app_settings,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_envelope(self, envelope_id: str) -> Envelope:
        envelope = self._envelopes.get(envelope_id)
        if envelope is None:
            raise EnvelopeNotFoundError(envelope_id)
        return envelope

    def _require_transaction(self, transaction_id: str) -> Transaction:
        tx = self._transactions.get(transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    def _apply_deltas(
        self,
        deltas: Mapping[str, Decimal],
        changes: ChangeSet,
        now: datetime,
    ) -> None:
        """One combined balance write per affected envelope."""
        for envelope_id, delta in deltas.items():
            envelope = self._envelopes[envelope_id]
            updated = envelope.model_copy(
                update={
                    "current_balance": envelope.current_balance + delta,
                    "last_updated": now,
                }
            )
            self._envelopes[envelope_id] = updated
            changes.patch(
                Collection.ENVELOPES,
                envelope_id,
                current_balance=updated.current_balance,
                last_updated=now,
            )

    def _replay_envelopes(self) -> dict[str, tuple[Decimal, Decimal]]:
        """Overwrite cached balances with replayed ones; return what drifted."""
        drift = self.verify_balances()
        for envelope_id, (_, replayed) in drift.items():
            self._envelopes[envelope_id] = self._envelopes[envelope_id].model_copy(
                update={"current_balance": replayed}
            )
        if drift:
            logger.warning(
                "ledger_balance_drift_corrected",
                envelopes=len(drift),
            )
        return drift

    # ------------------------------------------------------------------
    # Envelope operations
    # ------------------------------------------------------------------

    def create_envelope(self, name: str, initial_balance: AmountInput = 0) -> Envelope:
        """
        Create an envelope.

        A positive opening balance is recorded as an "Initial balance" Income
        transaction so the balance is reconstructible from history.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidEnvelopeError("Envelope name is required")
        amount = to_amount(initial_balance, allow_zero=True)

        now = self._clock()
        next_index = max((env.order_index for env in self._envelopes.values()), default=-1) + 1
        envelope = Envelope(
            name=name,
            current_balance=amount,
            last_updated=now,
            order_index=next_index,
        )
        changes = ChangeSet("create_envelope")

        self._envelopes[envelope.id] = envelope
        changes.upsert(Collection.ENVELOPES, envelope)

        if amount > 0:
            opening = Transaction(
                date=now,
                amount=amount,
                description=INITIAL_BALANCE_DESCRIPTION,
                envelope_id=envelope.id,
                type=TransactionType.INCOME,
            )
            self._transactions[opening.id] = opening
            changes.upsert(Collection.TRANSACTIONS, opening)

        self._emit(changes)
        return envelope

    def rename_envelope(self, envelope_id: str, new_name: str) -> Envelope:
        envelope = self._require_envelope(envelope_id)
        new_name = (new_name or "").strip()
        if not new_name:
            raise InvalidEnvelopeError("Envelope name is required")

        renamed = envelope.model_copy(update={"name": new_name})
        self._envelopes[envelope_id] = renamed

        changes = ChangeSet("rename_envelope")
        changes.patch(Collection.ENVELOPES, envelope_id, name=new_name)
        self._emit(changes)
        return renamed

    def delete_envelope(self, envelope_id: str) -> Envelope:
        """
        Delete an envelope together with its whole transaction history.

        Templates lose their allocation to it; templates left empty are
        deleted. No other envelope's balance changes.
        """
        envelope = self._require_envelope(envelope_id)
        doomed = [tx for tx in self._transactions.values() if tx.envelope_id == envelope_id]
        changed, removed = prune_templates(
            self._templates.values(),
            keep=lambda candidate: candidate != envelope_id,
        )

        changes = ChangeSet("delete_envelope")
        del self._envelopes[envelope_id]
        changes.delete(Collection.ENVELOPES, envelope_id)
        for tx in doomed:
            del self._transactions[tx.id]
            changes.delete(Collection.TRANSACTIONS, tx.id)
        self._commit_template_pruning(changed, removed, changes)

        self._emit(changes)
        return envelope

    # ------------------------------------------------------------------
    # Transaction operations
    # ------------------------------------------------------------------

    def add_transaction(
        self,
        envelope_id: str,
        amount: AmountInput,
        type: TransactionType,
        description: str = "",
        date: DateInput = None,
        reconciled: bool = False,
    ) -> Transaction:
        """Append an Income/Expense transaction and adjust the balance."""
        self._require_envelope(envelope_id)
        amount = to_amount(amount)
        when = to_datetime(date, self._clock)
        now = self._clock()

        tx = Transaction(
            date=when,
            amount=amount,
            description=description or "",
            envelope_id=envelope_id,
            reconciled=reconciled,
            type=TransactionType(type),
        )
        changes = ChangeSet("add_transaction")
        self._transactions[tx.id] = tx
        changes.upsert(Collection.TRANSACTIONS, tx)
        self._apply_deltas({envelope_id: tx.signed_amount}, changes, now)

        self._emit(changes)
        return tx

    def add_to_envelope(
        self,
        envelope_id: str,
        amount: AmountInput,
        note: str = "",
        date: DateInput = None,
    ) -> Transaction:
        return self.add_transaction(envelope_id, amount, TransactionType.INCOME, note, date)

    def spend_from_envelope(
        self,
        envelope_id: str,
        amount: AmountInput,
        note: str = "",
        date: DateInput = None,
    ) -> Transaction:
        return self.add_transaction(envelope_id, amount, TransactionType.EXPENSE, note, date)

    def transfer_funds(
        self,
        from_envelope_id: str,
        to_envelope_id: str,
        amount: AmountInput,
        note: str = "",
        date: DateInput = None,
    ) -> tuple[Transaction, Transaction]:
        """
        Move money between two envelopes.

        Returns ``(expense_leg, income_leg)``. Both legs and both balance
        changes are committed together, or nothing is.
        """
        source = self._require_envelope(from_envelope_id)
        destination = self._require_envelope(to_envelope_id)
        amount = to_amount(amount)
        when = to_datetime(date, self._clock)
        now = self._clock()

        expense_leg, income_leg = build_transfer_legs(source, destination, amount, note, when)

        changes = ChangeSet("transfer_funds")
        deltas: dict[str, Decimal] = {}
        for leg in (expense_leg, income_leg):
            self._transactions[leg.id] = leg
            changes.upsert(Collection.TRANSACTIONS, leg)
            add_delta(deltas, leg.envelope_id, leg.signed_amount)
        self._apply_deltas(deltas, changes, now)

        self._emit(changes)
        return expense_leg, income_leg

    def update_transaction(self, updated: Transaction) -> Transaction:
        """
        Replace a transaction and rebalance.

        - Moved to another envelope: the old envelope loses the old signed
          contribution, the new one gains the new contribution.
        - Same envelope, same type: only the amount difference is applied.
        - Same envelope, type changed: full revert plus full apply, summed.

        An old envelope that no longer exists has no balance to revert.
        """
        old = self._require_transaction(updated.id)
        self._require_envelope(updated.envelope_id)
        now = self._clock()

        deltas: dict[str, Decimal] = {}
        if old.envelope_id != updated.envelope_id:
            if old.envelope_id in self._envelopes:
                add_delta(deltas, old.envelope_id, -old.signed_amount)
            add_delta(deltas, updated.envelope_id, updated.signed_amount)
        elif old.type == updated.type:
            add_delta(deltas, updated.envelope_id, updated.type.sign(updated.amount - old.amount))
        else:
            add_delta(deltas, updated.envelope_id, updated.signed_amount - old.signed_amount)

        changes = ChangeSet("update_transaction")
        self._transactions[updated.id] = updated
        changes.upsert(Collection.TRANSACTIONS, updated)
        self._apply_deltas(deltas, changes, now)

        self._emit(changes)
        return updated

    def delete_transaction(self, transaction_id: str) -> list[Transaction]:
        """
        Delete a transaction and reverse its effect.

        Deleting either leg of a transfer deletes both. Returns the removed
        transactions (one, or both legs).
        """
        tx = self._require_transaction(transaction_id)
        removed = [tx]
        pair = find_transfer_pair(self._transactions.values(), tx)
        if pair is not None:
            removed.append(pair)
        now = self._clock()

        deltas: dict[str, Decimal] = {}
        for leg in removed:
            if leg.envelope_id in self._envelopes:
                add_delta(deltas, leg.envelope_id, -leg.signed_amount)

        changes = ChangeSet("delete_transaction")
        for leg in removed:
            del self._transactions[leg.id]
            changes.delete(Collection.TRANSACTIONS, leg.id)
        self._apply_deltas(deltas, changes, now)

        self._emit(changes)
        return removed

    def restore_transaction(self, tx: Transaction) -> bool:
        """
        Re-insert a previously deleted transaction (undo).

        Idempotent: returns False and changes nothing if the id is already
        present. Restoring one transfer leg does not restore its pair.
        """
        if tx.id in self._transactions:
            return False
        self._require_envelope(tx.envelope_id)
        now = self._clock()

        changes = ChangeSet("restore_transaction")
        self._transactions[tx.id] = tx
        changes.upsert(Collection.TRANSACTIONS, tx)
        self._apply_deltas({tx.envelope_id: tx.signed_amount}, changes, now)

        self._emit(changes)
        return True

    # ------------------------------------------------------------------
    # Distribution templates
    # ------------------------------------------------------------------

    def save_template(
        self,
        name: str,
        distributions: Mapping[str, AmountInput],
        note: str = "",
    ) -> DistributionTemplate:
        """Save a template; non-positive allocations are dropped first."""
        name = (name or "").strip()
        if not name:
            raise InvalidTemplateError("Template name is required")

        cleaned = clean_distributions(
            {envelope_id: parse_decimal(amount) for envelope_id, amount in distributions.items()}
        )
        if not cleaned:
            raise InvalidTemplateError("Template needs at least one positive allocation")
        for envelope_id in cleaned:
            self._require_envelope(envelope_id)

        template = DistributionTemplate(
            name=name,
            distributions=cleaned,
            last_used=self._clock(),
            note=note or "",
        )
        changes = ChangeSet("save_template")
        self._templates[template.id] = template
        changes.upsert(Collection.DISTRIBUTION_TEMPLATES, template)

        self._emit(changes)
        return template

    def delete_template(self, template_id: str) -> bool:
        if template_id not in self._templates:
            return False
        del self._templates[template_id]

        changes = ChangeSet("delete_template")
        changes.delete(Collection.DISTRIBUTION_TEMPLATES, template_id)
        self._emit(changes)
        return True

    def apply_template(
        self,
        template_id: str,
        note: str = "",
        date: DateInput = None,
    ) -> list[Transaction]:
        """Deposit every allocation of a template, in one commit."""
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        for envelope_id in template.distributions:
            self._require_envelope(envelope_id)
        when = to_datetime(date, self._clock)
        now = self._clock()

        changes = ChangeSet("apply_template")
        deposits = []
        deltas: dict[str, Decimal] = {}
        for envelope_id, amount in template.distributions.items():
            tx = Transaction(
                date=when,
                amount=amount,
                description=note or DEFAULT_DEPOSIT_DESCRIPTION,
                envelope_id=envelope_id,
                type=TransactionType.INCOME,
            )
            self._transactions[tx.id] = tx
            changes.upsert(Collection.TRANSACTIONS, tx)
            add_delta(deltas, envelope_id, tx.signed_amount)
            deposits.append(tx)
        self._apply_deltas(deltas, changes, now)

        self._templates[template_id] = template.model_copy(update={"last_used": now})
        changes.patch(Collection.DISTRIBUTION_TEMPLATES, template_id, last_used=now)

        self._emit(changes)
        return deposits

    def remove_envelope_from_templates(self, envelope_id: str) -> int:
        """Drop one envelope from every template. Returns templates touched."""
        changed, removed = prune_templates(
            self._templates.values(),
            keep=lambda candidate: candidate != envelope_id,
        )
        return self._prune(changed, removed, "remove_envelope_from_templates")

    def cleanup_orphaned_templates(self) -> int:
        """Drop allocations to envelopes that no longer exist."""
        changed, removed = prune_templates(
            self._templates.values(),
            keep=lambda candidate: candidate in self._envelopes,
        )
        return self._prune(changed, removed, "cleanup_orphaned_templates")

    def update_template_envelope_references(self, old_envelope_id: str, new_envelope_id: str) -> int:
        """Point every allocation for ``old_envelope_id`` at ``new_envelope_id``."""
        self._require_envelope(new_envelope_id)
        changed = rekey_templates(self._templates.values(), old_envelope_id, new_envelope_id)
        if not changed:
            return 0

        changes = ChangeSet("update_template_envelope_references")
        for template in changed:
            self._templates[template.id] = template
            changes.upsert(Collection.DISTRIBUTION_TEMPLATES, template)
        self._emit(changes)
        return len(changed)

    def _prune(self, changed, removed, operation: str) -> int:
        if not changed and not removed:
            return 0
        changes = ChangeSet(operation)
        self._commit_template_pruning(changed, removed, changes)
        self._emit(changes)
        return len(changed) + len(removed)

    def _commit_template_pruning(
        self,
        changed: list[DistributionTemplate],
        removed: list[str],
        changes: ChangeSet,
    ) -> None:
        for template in changed:
            self._templates[template.id] = template
            changes.upsert(Collection.DISTRIBUTION_TEMPLATES, template)
        for template_id in removed:
            del self._templates[template_id]
            changes.delete(Collection.DISTRIBUTION_TEMPLATES, template_id)

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def initialize_app_settings(self, user_id: Optional[str] = None) -> AppSettings:
        """Create the settings record if it does not exist yet."""
        if self._app_settings is not None:
            return self._app_settings

        settings = AppSettings(id=user_id or new_id(), user_id=user_id)
        self._app_settings = settings

        changes = ChangeSet("initialize_app_settings")
        changes.upsert(Collection.APP_SETTINGS, settings)
        self._emit(changes)
        return settings

    def update_app_settings(self, **fields: Any) -> AppSettings:
        """Field-level update of the settings record."""
        writable = set(AppSettings.model_fields) - {"id"}
        unknown = set(fields) - writable
        if unknown:
            raise LedgerError(f"Unknown or read-only settings fields: {sorted(unknown)}")

        existing = self._app_settings
        base = existing or AppSettings()
        try:
            updated = AppSettings.model_validate({**base.model_dump(), **fields})
        except ValidationError as e:
            raise LedgerError(f"Invalid settings: {e}")
        self._app_settings = updated

        changes = ChangeSet("update_app_settings")
        if existing is None:
            changes.upsert(Collection.APP_SETTINGS, updated)
        else:
            changes.patch(
                Collection.APP_SETTINGS,
                updated.id,
                **{name: getattr(updated, name) for name in fields},
            )
        self._emit(changes)
        return updated

    # ------------------------------------------------------------------
    # Wholesale state replacement (no change sets emitted)
    # ------------------------------------------------------------------

    def load_snapshot(self, snapshot: LedgerSnapshot) -> dict[str, tuple[Decimal, Decimal]]:
        """
        Replace the whole state with ``snapshot``.

        Balances are replayed from the snapshot's transactions and templates
        are pruned of unknown envelopes. Returns the balances that had to be
        corrected.
        """
        self._envelopes = {env.id: env for env in snapshot.envelopes}
        self._transactions = {tx.id: tx for tx in snapshot.transactions}
        self._templates = {t.id: t for t in snapshot.distribution_templates}
        self._app_settings = snapshot.app_settings
        self._prune_templates_silently()
        return self._replay_envelopes()

    def replace_collection(
        self,
        collection: Collection,
        models: Iterable[BaseModel],
    ) -> dict[str, tuple[Decimal, Decimal]]:
        """
        Replace one collection wholesale, keyed by id (last write wins).

        Used for remote real-time snapshots. Balances are replayed afterwards
        so the invariant holds even when collections arrive out of step.
        """
        models = list(models)
        if collection is Collection.ENVELOPES:
            self._envelopes = {m.id: m for m in models}
            self._prune_templates_silently()
        elif collection is Collection.TRANSACTIONS:
            self._transactions = {m.id: m for m in models}
        elif collection is Collection.DISTRIBUTION_TEMPLATES:
            self._templates = {m.id: m for m in models}
            self._prune_templates_silently()
        elif collection is Collection.APP_SETTINGS:
            self._app_settings = models[-1] if models else None
        return self._replay_envelopes()

    def clear(self) -> None:
        self._envelopes = {}
        self._transactions = {}
        self._templates = {}
        self._app_settings = None

    def _prune_templates_silently(self) -> None:
        changed, removed = prune_templates(
            self._templates.values(),
            keep=lambda candidate: candidate in self._envelopes,
        )
        for template in changed:
            self._templates[template.id] = template
        for template_id in removed:
            del self._templates[template_id]
