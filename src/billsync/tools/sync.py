# ABOUTME: Reconciliation tools for billsync
# ABOUTME: Pull a household from the remote ledger and find bills needing attention

from typing import TYPE_CHECKING

from billsync.tools.bills import load_bill_for_member, load_household_for_member, serialize_bill
from billsync.types import SyncStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastmcp import FastMCP

    from billsync.engine import SyncEngine


def register_sync_tools(mcp: "FastMCP", get_engine: "Callable") -> None:
    """Register reconciliation tools with the MCP server."""

    @mcp.tool
    async def sync_household(household_id: str, user_id: str) -> dict:
        """
        Pull remote ledger changes into a household's bills.

        Only expenses updated since the last pull are fetched. Bills edited
        both locally and remotely since their last sync are flagged as
        conflicts and left unchanged.

        Args:
            household_id: Linked household to reconcile
            user_id: Member whose remote account is used

        Returns:
            Counts of fetched, created, updated, deleted, conflicting, and
            skipped expenses
        """
        engine: SyncEngine = await get_engine()
        household = await load_household_for_member(engine, household_id, user_id)

        summary = await engine.pull_reconcile(household, user_id)
        return {"ok": True, "summary": summary.model_dump()}

    @mcp.tool
    async def retry_bill_push(bill_id: str, user_id: str) -> dict:
        """
        Push a bill again after a failed or skipped sync.

        Args:
            bill_id: Bill to push
            user_id: Member whose remote account is used

        Returns:
            The bill with its new sync state
        """
        engine: SyncEngine = await get_engine()
        bill, household = await load_bill_for_member(engine, bill_id, user_id)

        bill = await engine.push_on_update(bill, household, user_id)
        return serialize_bill(bill)

    @mcp.tool
    async def list_bills_needing_attention(household_id: str, user_id: str) -> list[dict]:
        """
        List bills whose last sync failed or that have a detected conflict.

        Args:
            household_id: Household to inspect
            user_id: Member asking

        Returns:
            Bill id, name, status, error, and conflict flag for each bill
        """
        engine: SyncEngine = await get_engine()
        await load_household_for_member(engine, household_id, user_id)

        flagged = []
        for bill in await engine.store.list_bills(household_id):
            state = bill.sync_state
            if state.status == SyncStatus.FAILED or state.conflict:
                flagged.append({
                    "bill_id": bill.id,
                    "bill_name": bill.bill_name,
                    "status": state.status.value,
                    "error": state.error,
                    "conflict": state.conflict,
                    "remote_expense_id": state.remote_expense_id,
                })
        return flagged
