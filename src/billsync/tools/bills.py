# ABOUTME: Bill tools for billsync
# ABOUTME: Create, edit, and delete bills, pushing each change to the remote ledger

from typing import TYPE_CHECKING

from billsync.exceptions import NotFoundError, ValidationError
from billsync.types import Bill, Household

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastmcp import FastMCP

    from billsync.engine import SyncEngine


async def load_household_for_member(engine: "SyncEngine", household_id: str, user_id: str) -> Household:
    """Load a household and check the user belongs to it."""
    household = await engine.store.get_household(household_id)
    if household is None:
        raise NotFoundError(f"Household {household_id} not found")
    if user_id not in household.member_ids:
        raise ValidationError("Not a member of this household")
    return household


async def load_bill_for_member(engine: "SyncEngine", bill_id: str, user_id: str) -> tuple[Bill, Household]:
    bill = await engine.store.get_bill(bill_id)
    if bill is None:
        raise NotFoundError(f"Bill {bill_id} not found")
    household = await load_household_for_member(engine, bill.household_id, user_id)
    return bill, household


def serialize_bill(bill: Bill) -> dict:
    return bill.model_dump(mode="json")


def register_bill_tools(mcp: "FastMCP", get_engine: "Callable") -> None:
    """Register bill tools with the MCP server."""

    @mcp.tool
    async def create_bill(
        household_id: str,
        user_id: str,
        bill_name: str,
        items: list[dict],
    ) -> dict:
        """
        Record an itemized bill and push it to the remote ledger.

        Each item is split equally between the members listed for it. The
        creating user is recorded as having paid the whole bill.

        Args:
            household_id: Household the bill belongs to
            user_id: Member creating the bill
            bill_name: Short description
            items: List of {"name", "amount", "split_between": [user ids]}

        Returns:
            The bill, including its sync state after the push attempt
        """
        engine: SyncEngine = await get_engine()
        await load_household_for_member(engine, household_id, user_id)

        bill = await engine.create_bill(household_id, bill_name, items, created_by=user_id)
        return serialize_bill(bill)

    @mcp.tool
    async def update_bill(
        bill_id: str,
        user_id: str,
        bill_name: str | None = None,
        items: list[dict] | None = None,
    ) -> dict:
        """
        Edit a bill and push the change to the remote ledger.

        Editing a bill clears a previously detected conflict; the pushed
        local version replaces the remote one.

        Args:
            bill_id: Bill to edit
            user_id: Member making the edit
            bill_name: New description (unchanged if omitted)
            items: New item list (unchanged if omitted)

        Returns:
            The bill, including its sync state after the push attempt
        """
        engine: SyncEngine = await get_engine()
        await load_bill_for_member(engine, bill_id, user_id)

        bill = await engine.update_bill(bill_id, user_id, bill_name=bill_name, items=items)
        return serialize_bill(bill)

    @mcp.tool
    async def delete_bill(bill_id: str, user_id: str) -> dict:
        """
        Delete a bill and its remote expense.

        If the remote delete fails the bill is kept and the error is raised,
        so the two sides never silently diverge.

        Args:
            bill_id: Bill to delete
            user_id: Member deleting the bill

        Returns:
            Confirmation with the deleted bill id
        """
        engine: SyncEngine = await get_engine()
        bill, _ = await load_bill_for_member(engine, bill_id, user_id)

        await engine.delete_remote(bill, user_id)
        return {"deleted": True, "bill_id": bill_id}

    @mcp.tool
    async def get_bill_sync_status(bill_id: str) -> dict:
        """
        Show a bill's sync state.

        Args:
            bill_id: Bill to inspect

        Returns:
            Status, remote expense id, timestamps, last error, and conflict flag
        """
        engine: SyncEngine = await get_engine()
        bill = await engine.store.get_bill(bill_id)
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found")

        return {
            "bill_id": bill.id,
            "bill_name": bill.bill_name,
            **bill.sync_state.model_dump(mode="json"),
        }
