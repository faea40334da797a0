# ABOUTME: Pydantic models for billsync
# ABOUTME: Defines User, Household, Bill, SyncState, PullSummary, and money helpers

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from pydantic import BaseModel, Field

CENT = Decimal("0.01")


def new_id() -> str:
    """Generate a local record id."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def cents_to_decimal(cents: int | None) -> Decimal:
    """Convert cents (integer) to Decimal dollars."""
    if cents is None:
        return Decimal("0.00")
    return Decimal(cents) / 100


def to_cents(amount: Decimal) -> int:
    """Round a dollar amount to whole cents, halves away from zero."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(cents: int) -> str:
    """Format cents as a fixed 2-decimal string (e.g. 334 -> "3.34")."""
    return f"{cents_to_decimal(cents):.2f}"


def parse_money(value: object) -> Decimal:
    """
    Parse a remote money string into non-negative dollars rounded to cents.

    Anything unparseable or non-finite counts as zero.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0.00")
    if not amount.is_finite():
        return Decimal("0.00")
    return max(Decimal("0.00"), amount.quantize(CENT, rounding=ROUND_HALF_UP))


class SyncStatus(str, Enum):
    """Outcome of the most recent sync attempt for a bill."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"


class User(BaseModel):
    """A household member, optionally linked to a remote ledger identity."""

    id: str = Field(default_factory=new_id)
    email: str
    name: str
    remote_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return bool(self.access_token)


class Household(BaseModel):
    """A group of users, optionally linked 1:1 to a remote group."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    owner_id: str
    member_ids: list[str] = Field(default_factory=list)
    remote_group_id: str | None = None
    remote_group_name: str | None = None
    sync_cursor: datetime | None = Field(
        default=None, description="Newest remote updated time ever pulled"
    )
    last_pulled_at: datetime | None = None
    version: int = 0

    @property
    def is_linked(self) -> bool:
        return bool(self.remote_group_id)

    def advance_cursor(self, candidate: datetime | None) -> None:
        """Move the sync cursor forward to candidate; never moves it back."""
        if candidate is None:
            return
        if self.sync_cursor is None or candidate > self.sync_cursor:
            self.sync_cursor = candidate


class BillItem(BaseModel):
    """One line of an itemized bill, split equally between members."""

    id: str = Field(default_factory=new_id)
    name: str
    amount: Decimal = Field(gt=0)
    split_between: list[str] = Field(default_factory=list)


class SyncState(BaseModel):
    """Sync bookkeeping embedded in each bill."""

    status: SyncStatus = SyncStatus.PENDING
    remote_expense_id: str | None = None
    synced_at: datetime | None = None
    last_attempt_at: datetime | None = None
    error: str | None = None
    remote_updated_at: datetime | None = None
    last_local_edit_at: datetime | None = None
    last_sync_direction: SyncDirection | None = None
    conflict: bool = False


class Bill(BaseModel):
    """An itemized local expense belonging to a household."""

    id: str = Field(default_factory=new_id)
    household_id: str
    bill_name: str
    items: list[BillItem] = Field(default_factory=list)
    totals: dict[str, Decimal] = Field(default_factory=dict)
    total_amount: Decimal
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    sync_state: SyncState = Field(default_factory=SyncState)
    version: int = 0


class BillDraft(BaseModel):
    """Local bill content projected from a remote expense."""

    bill_name: str
    items: list[BillItem]
    totals: dict[str, Decimal]
    total_amount: Decimal
    created_by: str


class PullSummary(BaseModel):
    """Per-pass counts returned by a pull reconciliation."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    skipped: int = 0
