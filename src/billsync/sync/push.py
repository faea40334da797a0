# ABOUTME: Local-to-remote sync for bills
# ABOUTME: Creates, updates, and deletes a bill's remote expense and records the outcome

import logging
from datetime import datetime

from billsync.auth import TokenBroker
from billsync.config import Settings
from billsync.exceptions import BillSyncError, StaleWriteError, UpstreamError
from billsync.ledger import RemoteLedgerClient, parse_remote_date
from billsync.projector import to_remote_payload
from billsync.storage import Store
from billsync.types import Bill, Household, SyncDirection, SyncStatus, utcnow

logger = logging.getLogger(__name__)

NO_LINKED_GROUP = "no linked group"


class PushSyncer:
    """
    Drives a bill's remote counterpart from local changes.

    Create and update outcomes are recorded on the bill's sync state rather
    than raised. Delete raises, because the local bill must survive a failed
    remote delete.
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

    async def push(self, bill: Bill, household: Household, actor_user_id: str) -> Bill:
        """
        Create or update the remote expense for a bill.

        Updates the existing remote expense when the bill already has one,
        otherwise creates it.

        Returns:
            The saved bill with its new sync state
        """
        state = bill.sync_state
        now = utcnow()

        if not household.is_linked:
            state.status = SyncStatus.SKIPPED
            state.last_attempt_at = now
            state.error = NO_LINKED_GROUP
            logger.info(f"Skipped push of bill {bill.id}: household {household.id} has {NO_LINKED_GROUP}")
            return await self._store.save_bill(bill)

        try:
            participant_ids = set(bill.totals) | {actor_user_id}
            participants = await self._store.get_users(sorted(participant_ids))
            payload = to_remote_payload(
                bill,
                household,
                actor_user_id,
                participants,
                currency_code=self._settings.currency_code,
                details_item_limit=self._settings.details_item_limit,
            )

            expense_id = state.remote_expense_id
            if expense_id:
                remote = await self._broker.with_access_token(
                    actor_user_id,
                    lambda token: self._ledger.update_expense(token, expense_id, payload),
                )
            else:
                remote = await self._broker.with_access_token(
                    actor_user_id,
                    lambda token: self._ledger.create_expense(token, payload),
                )
                if not remote.get("id"):
                    raise UpstreamError("create returned no expense id")
        except BillSyncError as e:
            state.status = SyncStatus.FAILED
            state.last_attempt_at = now
            state.last_sync_direction = SyncDirection.PUSH
            state.error = str(e)
            logger.warning(f"Push of bill {bill.id} failed: {e}")
            return await self._store.save_bill(bill)

        expense_id = state.remote_expense_id or str(remote["id"])
        remote_updated_at = parse_remote_date(remote.get("updated_at")) or now
        _record_success(bill, expense_id, remote_updated_at, now, in_step=True)
        logger.info(f"Pushed bill {bill.id} as remote expense {expense_id}")

        try:
            return await self._store.save_bill(bill)
        except StaleWriteError:
            # Stored copy moved on during the remote call; keep the remote id on it
            current = await self._store.get_bill(bill.id)
            if current is None:
                logger.warning(f"Bill {bill.id} was deleted during push; remote expense {expense_id} is orphaned")
                return bill
            logger.warning(f"Bill {bill.id} changed during push, re-applying remote expense {expense_id}")
            in_step = current.sync_state.last_local_edit_at == bill.sync_state.last_local_edit_at
            _record_success(current, expense_id, remote_updated_at, now, in_step=in_step)
            return await self._store.save_bill(current)

    async def delete(self, bill: Bill, actor_user_id: str) -> None:
        """
        Delete a bill locally, removing its remote expense first.

        Raises:
            BillSyncError: Remote delete failed; the local bill is left intact
        """
        expense_id = bill.sync_state.remote_expense_id
        if expense_id:
            await self._broker.with_access_token(
                actor_user_id,
                lambda token: self._ledger.delete_expense(token, expense_id),
            )
            logger.info(f"Deleted remote expense {expense_id} for bill {bill.id}")

        await self._store.delete_bill(bill.id)
        logger.info(f"Deleted bill {bill.id}")


def _record_success(
    bill: Bill,
    expense_id: str,
    remote_updated_at: datetime,
    pushed_at: datetime,
    in_step: bool,
) -> None:
    """
    Record a successful push on a bill.

    in_step is False when the bill was edited locally while the push was in
    flight; it then stays pending so the edit is pushed next.
    """
    state = bill.sync_state
    state.remote_expense_id = expense_id
    state.synced_at = pushed_at
    state.last_attempt_at = pushed_at
    state.remote_updated_at = remote_updated_at
    state.last_sync_direction = SyncDirection.PUSH

    if not in_step:
        return
    state.status = SyncStatus.SYNCED
    state.error = None
    state.conflict = False
