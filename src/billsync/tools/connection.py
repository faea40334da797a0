# ABOUTME: Remote ledger connection tools for billsync
# ABOUTME: Report link status and complete the OAuth authorization-code exchange

from typing import TYPE_CHECKING

from billsync.exceptions import NotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastmcp import FastMCP

    from billsync.engine import SyncEngine


def register_connection_tools(mcp: "FastMCP", get_engine: "Callable") -> None:
    """Register connection tools with the MCP server."""

    @mcp.tool
    async def get_connection_status(user_id: str) -> dict:
        """
        Check whether a user is connected to the remote ledger.

        Args:
            user_id: Local user id

        Returns:
            Connection flag, remote user id, and token expiry
        """
        engine: SyncEngine = await get_engine()
        user = await engine.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        return {
            "connected": user.is_connected,
            "remote_user_id": user.remote_id,
            "expires_at": user.expires_at.isoformat() if user.expires_at else None,
        }

    @mcp.tool
    async def connect_remote_account(user_id: str, code: str, redirect_uri: str) -> dict:
        """
        Link a user to their remote ledger account.

        Args:
            user_id: Local user id
            code: Authorization code from the OAuth callback
            redirect_uri: Redirect URI used when requesting the code

        Returns:
            Connection status after linking
        """
        engine: SyncEngine = await get_engine()
        user = await engine.broker.connect(user_id, code, redirect_uri)
        return {"connected": user.is_connected, "remote_user_id": user.remote_id}
