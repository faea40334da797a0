# ABOUTME: Mapping between local bills and remote ledger expenses
# ABOUTME: Builds expense payloads (owed/paid shares) and projects remote expenses to bill drafts

import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal

from billsync.exceptions import InvalidAmountError, MissingRemoteLinkError
from billsync.types import (
    Bill,
    BillDraft,
    BillItem,
    Household,
    User,
    format_cents,
    parse_money,
    to_cents,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
DETAILS_ITEM_LIMIT = 25


def absorb_rounding_slack(owed_cents: dict[str, int], total_cents: int, acting_user_id: str) -> dict[str, int]:
    """
    Give the whole rounding difference to the acting user.

    Each share is rounded to cents on its own, so the shares can miss the
    total by a few cents either way. The signed difference goes entirely to
    the acting user so owed shares always sum to total_cents.
    """
    slack = total_cents - sum(owed_cents.values())
    adjusted = dict(owed_cents)
    adjusted[acting_user_id] = adjusted.get(acting_user_id, 0) + slack
    return adjusted


def single_payer_paid_cents(participant_ids: Iterable[str], total_cents: int, acting_user_id: str) -> dict[str, int]:
    """The acting user is assumed to have paid the full bill; everyone else paid nothing."""
    return {
        user_id: total_cents if user_id == acting_user_id else 0
        for user_id in participant_ids
    }


def build_details(bill: Bill, names_by_id: Mapping[str, str], limit: int = DETAILS_ITEM_LIMIT) -> str:
    """Multi-line expense notes listing the first items and who shares each."""
    lines = [f"Itemized bill: {bill.bill_name}"]
    for item in bill.items[:limit]:
        sharers = ", ".join(names_by_id.get(uid, uid) for uid in item.split_between) or "unassigned"
        lines.append(f"- {item.name}: {format_cents(to_cents(item.amount))} ({sharers})")

    remaining = len(bill.items) - limit
    if remaining > 0:
        lines.append(f"... and {remaining} more item{'s' if remaining != 1 else ''}")
    return "\n".join(lines)


def to_remote_payload(
    bill: Bill,
    household: Household,
    acting_user_id: str,
    participant_users: Iterable[User],
    currency_code: str = DEFAULT_CURRENCY,
    details_item_limit: int = DETAILS_ITEM_LIMIT,
) -> dict:
    """
    Project a local bill into the remote ledger's expense payload.

    Args:
        bill: Bill to project
        household: Household the bill belongs to (supplies the group id)
        acting_user_id: User pushing the bill; treated as the sole payer
        participant_users: Users to look up remote identities and names from
        currency_code: Currency sent with the expense
        details_item_limit: Max items listed in the details text

    Returns:
        Nested payload for create_expense / update_expense

    Raises:
        InvalidAmountError: Bill total is not positive
        MissingRemoteLinkError: A participant has no remote identity
    """
    if bill.total_amount <= 0:
        raise InvalidAmountError(f"Bill total must be positive, got {bill.total_amount}")

    participant_ids = [user_id for user_id, amount in bill.totals.items() if amount != 0]
    if acting_user_id not in participant_ids:
        participant_ids.append(acting_user_id)

    users_by_id = {user.id: user for user in participant_users}
    missing = []
    for user_id in participant_ids:
        user = users_by_id.get(user_id)
        if user is None or not user.remote_id:
            missing.append(user.name if user else user_id)
    if missing:
        raise MissingRemoteLinkError(missing)

    total_cents = to_cents(bill.total_amount)
    owed = absorb_rounding_slack(
        {user_id: to_cents(bill.totals.get(user_id, Decimal("0"))) for user_id in participant_ids},
        total_cents,
        acting_user_id,
    )
    paid = single_payer_paid_cents(participant_ids, total_cents, acting_user_id)

    names_by_id = {user.id: user.name for user in users_by_id.values()}
    payload = {
        "cost": format_cents(total_cents),
        "description": bill.bill_name,
        "currency_code": currency_code,
        "details": build_details(bill, names_by_id, details_item_limit),
        "users": [
            {
                "user_id": users_by_id[user_id].remote_id,
                "owed_share": format_cents(owed[user_id]),
                "paid_share": format_cents(paid[user_id]),
            }
            for user_id in participant_ids
        ],
    }
    if household.remote_group_id:
        payload["group_id"] = household.remote_group_id
    return payload


def _row_remote_id(row: dict) -> str | None:
    raw = row.get("user_id")
    if not raw and isinstance(row.get("user"), dict):
        raw = row["user"].get("id")
    return str(raw) if raw else None


def from_remote_expense(
    expense: dict,
    local_users_by_remote_id: Mapping[str, User],
    allowed_member_ids: set[str],
    fallback_creator: str,
    required_participant: str | None = None,
) -> BillDraft | None:
    """
    Project a remote expense into local bill content.

    This is a lossy approximation: the remote ledger only knows per-person
    shares, so each surviving participant gets one synthesized item for what
    they owe.

    Args:
        expense: Remote expense record
        local_users_by_remote_id: Household members keyed by remote id
        allowed_member_ids: Local ids of household members
        fallback_creator: Local user credited when no single top payer exists
        required_participant: If set, this local user must be a party to the expense

    Returns:
        BillDraft, or None if no household member participates (or the
        required participant doesn't, or there's no positive amount)
    """
    expense_id = str(expense["id"]) if expense.get("id") else None
    if not expense_id:
        return None

    rows = expense.get("users") if isinstance(expense.get("users"), list) else []
    shares = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        remote_id = _row_remote_id(row)
        local_user = local_users_by_remote_id.get(remote_id) if remote_id else None
        if local_user is None or local_user.id not in allowed_member_ids:
            continue
        shares.append({
            "user_id": local_user.id,
            "name": local_user.name or local_user.id,
            "owed": parse_money(row.get("owed_share")),
            "paid": parse_money(row.get("paid_share")),
        })

    if not shares:
        return None
    if required_participant and not any(s["user_id"] == required_participant for s in shares):
        return None

    totals: dict[str, Decimal] = {}
    for share in shares:
        totals[share["user_id"]] = totals.get(share["user_id"], Decimal("0")) + share["owed"]

    total_amount = parse_money(expense.get("cost"))
    if total_amount <= 0:
        total_amount = sum((s["owed"] for s in shares), Decimal("0"))
    if total_amount <= 0:
        return None

    top_paid = max(s["paid"] for s in shares)
    top_payers = {s["user_id"] for s in shares if s["paid"] == top_paid}
    created_by = top_payers.pop() if len(top_payers) == 1 else fallback_creator

    items = [
        BillItem(name=f"Ledger share - {s['name']}", amount=s["owed"], split_between=[s["user_id"]])
        for s in shares
        if s["owed"] > 0
    ]
    if not items:
        items.append(
            BillItem(name="Imported ledger amount", amount=total_amount, split_between=[created_by])
        )
        totals[created_by] = total_amount

    description = (expense.get("description") or "").strip()
    return BillDraft(
        bill_name=description or f"Ledger expense {expense_id}",
        items=items,
        totals=totals,
        total_amount=total_amount,
        created_by=created_by,
    )
