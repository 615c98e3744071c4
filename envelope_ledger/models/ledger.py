"""
Core Ledger Models for Envelope Ledger

These models define the strict schemas for every entity the ledger owns:
envelopes, transactions, distribution templates and the per-user settings
record.

DESIGN DECISION: Money is always a Decimal. Balances are summed over many small
transactions and float drift would break the replay invariant.

DESIGN DECISION: Models are frozen. The ledger store hands out its own
records as read-only snapshots, and every change goes through a store
operation which builds a new record with ``model_copy(update=...)``.

Field names are snake_case in Python and camelCase on the wire, so backup
files keep the shape the budgeting app has always exported.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import uuid4

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid4())


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


# =============================================================================
# ENUMS
# =============================================================================

class TransactionType(str, Enum):
    """
    Direction of a transaction.

    Transfer legs are not a third type: the source leg is an Expense and the
    destination leg is an Income, so one sign rule covers everything.
    """
    INCOME = "Income"
    EXPENSE = "Expense"

    @classmethod
    def _missing_(cls, value):
        # Remote documents store the type lowercased
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None

    def sign(self, amount: Decimal) -> Decimal:
        """Signed contribution of ``amount`` to an envelope balance."""
        return amount if self is TransactionType.INCOME else -amount


class Theme(str, Enum):
    """Display theme stored in the user's settings record."""
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


# =============================================================================
# BASE
# =============================================================================

class LedgerModel(BaseModel):
    """Shared configuration for every ledger entity."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
        extra="ignore",
    )

    def to_document(self) -> dict:
        """JSON-compatible dict using the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# ENTITIES
# =============================================================================

class Envelope(LedgerModel):
    """
    A named bucket holding a running balance.

    ``current_balance`` is a materialized view: it must always equal the signed
    sum of the transactions that reference this envelope.
    """

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=200)
    current_balance: Decimal = Field(default=Decimal("0"))
    last_updated: UtcDatetime = Field(default_factory=utc_now)
    is_active: bool = True
    order_index: int = Field(default=0, ge=0)


class Transaction(LedgerModel):
    """
    A single dated money movement against one envelope.

    Two transactions sharing a ``transfer_id`` are the legs of one transfer.
    """

    id: str = Field(default_factory=new_id)
    date: UtcDatetime = Field(default_factory=utc_now)
    amount: Decimal = Field(..., gt=0)
    description: str = Field(default="", max_length=500)
    envelope_id: str = Field(..., min_length=1)
    reconciled: bool = False
    type: TransactionType
    transfer_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        """Contribution of this transaction to its envelope's balance."""
        return self.type.sign(self.amount)

    @property
    def is_transfer_leg(self) -> bool:
        return self.transfer_id is not None


class DistributionTemplate(LedgerModel):
    """
    A saved recipe for splitting a deposit across envelopes.

    Only positive allocations are kept; a zero allocation is not meaningful.
    """

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=200)
    distributions: dict[str, Decimal] = Field(default_factory=dict)
    last_used: UtcDatetime = Field(default_factory=utc_now)
    note: str = ""

    @field_validator("distributions")
    @classmethod
    def drop_non_positive(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        return {envelope_id: amount for envelope_id, amount in v.items() if amount > 0}

    @property
    def total(self) -> Decimal:
        return sum(self.distributions.values(), Decimal("0"))


class AppSettings(LedgerModel):
    """Singleton, user-scoped preferences record."""

    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    theme: Theme = Theme.SYSTEM


# =============================================================================
# SNAPSHOT
# =============================================================================

class LedgerSnapshot(LedgerModel):
    """
    Full ledger state as exported, imported, bundled or loaded remotely.

    ``envelopes`` and ``transactions`` are required; everything else is
    optional so older backup files still load.
    """

    envelopes: list[Envelope]
    transactions: list[Transaction]
    distribution_templates: list[DistributionTemplate] = Field(default_factory=list)
    app_settings: Optional[AppSettings] = None
    export_date: Optional[UtcDatetime] = None
    version: Optional[str] = None
