# ABOUTME: Remote-to-local reconciliation for a household's linked group
# ABOUTME: Pages remote expenses since the cursor, applies changes, and flags conflicts

import logging
from datetime import datetime

from billsync.auth import TokenBroker
from billsync.config import Settings
from billsync.exceptions import ConflictDetectedError, NotLinkedError, StaleWriteError
from billsync.ledger import RemoteLedgerClient, parse_remote_date
from billsync.projector import from_remote_expense
from billsync.storage import Store
from billsync.types import (
    Bill,
    BillDraft,
    Household,
    PullSummary,
    SyncDirection,
    SyncState,
    SyncStatus,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "conflict detected: local and remote both changed since last sync"


def is_settlement(expense: dict) -> bool:
    """Payment records settle debts and aren't itemized expenses."""
    return expense.get("payment") is True


def check_conflict(bill: Bill, remote_updated_at: datetime) -> bool:
    """
    Decide whether a remote change can be applied to a bill.

    Returns:
        True if the remote side changed since the last agreed sync, False if
        it didn't (nothing to apply)

    Raises:
        ConflictDetectedError: The bill was also edited locally since its last
            successful sync
    """
    state = bill.sync_state
    known = state.remote_updated_at
    remote_changed = known is None or remote_updated_at > known
    local_changed = bool(
        state.last_local_edit_at
        and state.synced_at
        and state.last_local_edit_at > state.synced_at
    )

    if local_changed and remote_changed:
        raise ConflictDetectedError(CONFLICT_MESSAGE)
    return remote_changed


class PullSyncer:
    """
    Reconciles remote ledger changes into local bills.

    Each pass requests only expenses updated after the household's cursor,
    pages sequentially, and moves the cursor forward to the newest remote
    update seen.
    """

    def __init__(
        self,
        store: Store,
        ledger: RemoteLedgerClient,
        broker: TokenBroker,
        settings: Settings,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._broker = broker
        self._settings = settings

    async def pull(self, household: Household, actor_user_id: str) -> PullSummary:
        """
        Run one reconciliation pass for a household.

        Args:
            household: Household to reconcile (must be linked)
            actor_user_id: User whose credential is used; must be a party to
                any expense that gets imported

        Returns:
            PullSummary with per-pass counts

        Raises:
            NotLinkedError: Household has no remote group
            NotConnectedError: Actor has no remote credential
            RemoteLedgerError: A page could not be fetched
        """
        if not household.is_linked:
            raise NotLinkedError(f"Household {household.id} is not linked to a remote group")

        members = await self._store.get_users(household.member_ids)
        by_remote_id: dict[str, User] = {u.remote_id: u for u in members if u.remote_id}
        allowed = set(household.member_ids)

        since = household.sync_cursor
        newest = since
        summary = PullSummary()
        limit = self._settings.page_size
        group_id = household.remote_group_id or ""

        for page in range(self._settings.max_pages):
            offset = page * limit
            expenses = await self._broker.with_access_token(
                actor_user_id,
                lambda token: self._ledger.get_expenses(
                    token, group_id, limit=limit, offset=offset, updated_after=since
                ),
            )
            summary.fetched += len(expenses)
            logger.debug(f"Household {household.id} page {page}: {len(expenses)} expenses")

            for expense in expenses:
                observed = parse_remote_date(expense.get("updated_at"))
                if observed is not None and (newest is None or observed > newest):
                    newest = observed

                try:
                    await self._apply(
                        expense, observed or utcnow(), household, by_remote_id, allowed, actor_user_id, summary
                    )
                except StaleWriteError as e:
                    logger.warning(f"Skipped expense {expense.get('id')}: {e}")
                    summary.skipped += 1

            if len(expenses) < limit:
                break

        household.advance_cursor(newest)
        household.last_pulled_at = utcnow()
        await self._store.save_household(household)

        logger.info(f"Pulled household {household.id}: {summary.model_dump()}")
        return summary

    async def _apply(
        self,
        expense: dict,
        remote_updated_at: datetime,
        household: Household,
        by_remote_id: dict[str, User],
        allowed: set[str],
        actor_user_id: str,
        summary: PullSummary,
    ) -> None:
        expense_id = str(expense["id"]) if expense.get("id") else None
        if not expense_id:
            summary.skipped += 1
            return

        existing = await self._store.find_bill_by_remote_id(household.id, expense_id)

        if expense.get("deleted_at"):
            if existing:
                await self._store.delete_bill(existing.id)
                logger.info(f"Deleted bill {existing.id}: remote expense {expense_id} was deleted")
                summary.deleted += 1
            else:
                summary.skipped += 1
            return

        if is_settlement(expense):
            summary.skipped += 1
            return

        draft = from_remote_expense(
            expense,
            by_remote_id,
            allowed,
            fallback_creator=actor_user_id,
            required_participant=actor_user_id,
        )
        if draft is None:
            summary.skipped += 1
            return

        if existing is None:
            await self._create(household, expense_id, draft, remote_updated_at)
            summary.created += 1
            return

        now = utcnow()
        state = existing.sync_state
        try:
            remote_changed = check_conflict(existing, remote_updated_at)
        except ConflictDetectedError as e:
            state.status = SyncStatus.FAILED
            state.conflict = True
            state.error = str(e)
            state.last_attempt_at = now
            state.remote_updated_at = remote_updated_at
            state.last_sync_direction = SyncDirection.PULL
            await self._store.save_bill(existing)
            logger.warning(f"Conflict on bill {existing.id} (remote expense {expense_id})")
            summary.conflicts += 1
            return

        if not remote_changed:
            summary.skipped += 1
            return

        existing.bill_name = draft.bill_name
        existing.items = draft.items
        existing.totals = draft.totals
        existing.total_amount = draft.total_amount
        state.status = SyncStatus.SYNCED
        state.synced_at = now
        state.last_attempt_at = now
        state.error = None
        state.remote_updated_at = remote_updated_at
        state.last_sync_direction = SyncDirection.PULL
        state.conflict = False
        await self._store.save_bill(existing)
        logger.info(f"Updated bill {existing.id} from remote expense {expense_id}")
        summary.updated += 1

    async def _create(
        self,
        household: Household,
        expense_id: str,
        draft: BillDraft,
        remote_updated_at: datetime,
    ) -> Bill:
        now = utcnow()
        bill = Bill(
            household_id=household.id,
            bill_name=draft.bill_name,
            items=draft.items,
            totals=draft.totals,
            total_amount=draft.total_amount,
            created_by=draft.created_by,
            sync_state=SyncState(
                status=SyncStatus.SYNCED,
                remote_expense_id=expense_id,
                synced_at=now,
                last_attempt_at=now,
                remote_updated_at=remote_updated_at,
                last_local_edit_at=None,
                last_sync_direction=SyncDirection.PULL,
                conflict=False,
            ),
        )
        await self._store.save_bill(bill)
        logger.info(f"Created bill {bill.id} from remote expense {expense_id}")
        return bill
