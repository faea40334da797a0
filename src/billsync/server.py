# ABOUTME: MCP server entry point for billsync
# ABOUTME: Configures FastMCP and registers bill, sync, and connection tools

import logging

from fastmcp import FastMCP

from billsync.client import get_engine
from billsync.tools.bills import register_bill_tools
from billsync.tools.connection import register_connection_tools
from billsync.tools.sync import register_sync_tools

logger = logging.getLogger(__name__)


def create_server() -> FastMCP:
    """
    Create and configure the billsync MCP server.

    Returns:
        Configured FastMCP server instance
    """
    mcp = FastMCP(
        name="billsync",
        instructions="""
billsync keeps a household's itemized bills in step with a shared-expense
ledger that other people can also edit. You can:

- Record, edit, and delete itemized bills; each change is pushed to the
  household's linked ledger group
- Pull ledger changes into local bills with sync_household
- Check a bill's sync state and list bills needing attention
- Connect a user to their ledger account

Sync outcomes are stored on each bill rather than raised:
- synced: local and remote agree
- skipped: the household has no linked group
- failed: the push or pull failed; see the bill's error
- conflict: the bill was edited both locally and remotely since the last
  sync. Nothing is merged automatically; edit the bill (update_bill) to push
  the version you want to keep.

Deleting a bill deletes its ledger expense first; if that fails the bill is
kept and the error is returned.
""",
    )

    register_bill_tools(mcp, get_engine)
    register_sync_tools(mcp, get_engine)
    register_connection_tools(mcp, get_engine)

    return mcp


def main() -> None:
    """Run the MCP server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    server = create_server()
    server.run()


if __name__ == "__main__":
    main()
