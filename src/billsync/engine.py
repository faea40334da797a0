# ABOUTME: Sync engine facade used by request handlers and tools
# ABOUTME: Serializes push/pull per household and reloads records before syncing

import logging
from collections.abc import Iterable

from billsync.auth import TokenBroker
from billsync.bills import apply_local_edit, new_bill
from billsync.config import Settings
from billsync.exceptions import NotFoundError
from billsync.ledger import RemoteLedgerClient
from billsync.storage import Store
from billsync.sync import HouseholdLocks, PullSyncer, PushSyncer
from billsync.types import Bill, BillItem, Household, PullSummary

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Local interface to the sync engine.

    Push and delete wait behind a running sync for the same household; a
    pull is rejected with SyncInProgressError if one is already running.
    Records are reloaded under the lock so every sync works on the latest
    stored version.
    """

    def __init__(
        self,
        store: Store,
        ledger: RemoteLedgerClient,
        broker: TokenBroker,
        settings: Settings,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.broker = broker
        self.settings = settings
        self.locks = HouseholdLocks()
        self._pusher = PushSyncer(store, ledger, broker, settings)
        self._puller = PullSyncer(store, ledger, broker, settings)

    @classmethod
    def from_settings(cls, settings: Settings, store: Store) -> "SyncEngine":
        ledger = RemoteLedgerClient(settings.api_base, timeout=settings.request_timeout)
        broker = TokenBroker(store, settings, ledger)
        return cls(store, ledger, broker, settings)

    async def _load_bill(self, bill_id: str) -> Bill:
        bill = await self.store.get_bill(bill_id)
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        return bill

    async def _load_household(self, household_id: str) -> Household:
        household = await self.store.get_household(household_id)
        if household is None:
            raise NotFoundError(f"Household {household_id} not found")
        return household

    async def _reload(self, bill: Bill, household: Household) -> tuple[Bill, Household]:
        return await self._load_bill(bill.id), await self._load_household(household.id)

    async def push_on_create(self, bill: Bill, household: Household, actor_user_id: str) -> Bill:
        """Push a newly created (already saved) bill to the remote ledger."""
        async with self.locks.hold(household.id):
            bill, household = await self._reload(bill, household)
            return await self._pusher.push(bill, household, actor_user_id)

    async def push_on_update(self, bill: Bill, household: Household, actor_user_id: str) -> Bill:
        """
        Push a locally edited (already saved) bill to the remote ledger.

        A bill that never reached the remote ledger is created there instead.
        """
        async with self.locks.hold(household.id):
            bill, household = await self._reload(bill, household)
            if not bill.sync_state.remote_expense_id:
                logger.debug(f"Bill {bill.id} has no remote expense yet, pushing as create")
            return await self._pusher.push(bill, household, actor_user_id)

    async def create_bill(
        self,
        household_id: str,
        bill_name: str,
        items: Iterable[BillItem | dict],
        created_by: str,
    ) -> Bill:
        """
        Record a new bill and push it, all under the household lock.

        Raises:
            NotFoundError: Household doesn't exist
            ValidationError: Bill name or items are invalid
        """
        async with self.locks.hold(household_id):
            household = await self._load_household(household_id)
            bill = new_bill(household, bill_name, items, created_by=created_by)
            await self.store.save_bill(bill)
            return await self._pusher.push(bill, household, created_by)

    async def update_bill(
        self,
        bill_id: str,
        user_id: str,
        bill_name: str | None = None,
        items: Iterable[BillItem | dict] | None = None,
    ) -> Bill:
        """
        Edit a bill and push the change, all under the household lock.

        The edit and its save never interleave with a push or pull of the
        same household.
        """
        household_id = (await self._load_bill(bill_id)).household_id

        async with self.locks.hold(household_id):
            bill = await self._load_bill(bill_id)
            household = await self._load_household(household_id)
            apply_local_edit(bill, household, bill_name=bill_name, items=items)
            await self.store.save_bill(bill)
            return await self._pusher.push(bill, household, user_id)

    async def delete_remote(self, bill: Bill, actor_user_id: str) -> None:
        """
        Delete a bill, removing its remote expense first.

        Raises:
            BillSyncError: The remote delete failed and the bill was kept
        """
        async with self.locks.hold(bill.household_id):
            current = await self._load_bill(bill.id)
            await self._pusher.delete(current, actor_user_id)

    async def pull_reconcile(self, household: Household, actor_user_id: str) -> PullSummary:
        """
        Reconcile remote changes into the household's bills.

        Raises:
            SyncInProgressError: A sync for this household is already running
            NotLinkedError: Household has no remote group
        """
        async with self.locks.hold(household.id, wait=False):
            current = await self._load_household(household.id)
            return await self._puller.pull(current, actor_user_id)

    async def close(self) -> None:
        await self.ledger.close()
