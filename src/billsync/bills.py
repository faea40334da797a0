# ABOUTME: Local bill mutations for billsync
# ABOUTME: Normalizes items, computes equal-split totals, and stamps local edit times

import logging
from collections.abc import Iterable
from decimal import Decimal

from billsync.exceptions import ValidationError
from billsync.types import Bill, BillItem, Household, SyncState, SyncStatus, utcnow

logger = logging.getLogger(__name__)


def normalize_items(items: Iterable[BillItem | dict], household: Household) -> list[BillItem]:
    """
    Validate raw items and drop split members outside the household.

    Args:
        items: BillItem instances or dicts with name, amount, split_between
        household: Household whose members may share items

    Returns:
        List of BillItem with trimmed names and filtered splits
    """
    members = set(household.member_ids)
    normalized = []
    for raw in items:
        item = raw if isinstance(raw, BillItem) else BillItem.model_validate(raw)
        split = [user_id for user_id in item.split_between if user_id in members]
        if len(split) != len(item.split_between):
            logger.debug(f"Dropped non-members from split of item {item.id}")
        normalized.append(
            item.model_copy(update={"name": item.name.strip(), "split_between": split})
        )
    return normalized


def build_totals(items: Iterable[BillItem]) -> dict[str, Decimal]:
    """
    Sum each member's equal share of every item they split.

    Shares are not rounded; fractional cents accumulate until the bill is
    serialized for the remote ledger.
    """
    totals: dict[str, Decimal] = {}
    for item in items:
        if not item.split_between:
            continue
        share = item.amount / len(item.split_between)
        for user_id in item.split_between:
            totals[user_id] = totals.get(user_id, Decimal("0")) + share
    return totals


def _validate(bill_name: str, items: list) -> str:
    name = (bill_name or "").strip()
    if not name:
        raise ValidationError("Bill name is required")
    if not items:
        raise ValidationError("At least one item is required")
    return name


def new_bill(
    household: Household,
    bill_name: str,
    items: Iterable[BillItem | dict],
    created_by: str,
) -> Bill:
    """Build a new pending bill for a household (not yet saved)."""
    raw_items = list(items)
    name = _validate(bill_name, raw_items)
    normalized = normalize_items(raw_items, household)

    return Bill(
        household_id=household.id,
        bill_name=name,
        items=normalized,
        totals=build_totals(normalized),
        total_amount=sum((item.amount for item in normalized), Decimal("0")),
        created_by=created_by,
        sync_state=SyncState(status=SyncStatus.PENDING, last_local_edit_at=utcnow()),
    )


def apply_local_edit(
    bill: Bill,
    household: Household,
    bill_name: str | None = None,
    items: Iterable[BillItem | dict] | None = None,
) -> Bill:
    """
    Apply a human edit to a bill in place.

    Stamps last_local_edit_at, resets the sync status to pending, and clears
    any conflict flag since the edit is the manual resolution.
    """
    if bill_name is not None or items is not None:
        raw_items = list(items) if items is not None else bill.items
        name = _validate(bill_name if bill_name is not None else bill.bill_name, raw_items)
        normalized = normalize_items(raw_items, household)

        bill.bill_name = name
        bill.items = normalized
        bill.totals = build_totals(normalized)
        bill.total_amount = sum((item.amount for item in normalized), Decimal("0"))

    state = bill.sync_state
    state.last_local_edit_at = utcnow()
    state.status = SyncStatus.PENDING
    state.conflict = False
    state.error = None
    return bill
