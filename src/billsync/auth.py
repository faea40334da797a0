# ABOUTME: Remote ledger credential lifecycle for billsync
# ABOUTME: Runs calls with a valid access token, refreshing once on auth failure

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

import httpx

from billsync.config import Settings
from billsync.exceptions import (
    BillSyncError,
    NotConnectedError,
    NotFoundError,
    UnauthenticatedError,
)
from billsync.ledger import RemoteLedgerClient, first_error_message
from billsync.storage import Store
from billsync.types import User, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBroker:
    """
    Owns each user's remote credential and the refresh protocol.

    Every remote call in the sync engine goes through with_access_token so
    an expired token is refreshed and the call retried exactly once.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        ledger: RemoteLedgerClient,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._ledger = ledger
        self._transport = transport

    async def _load_connected_user(self, user_id: str) -> User:
        user = await self._store.get_user(user_id)
        if user is None or not user.access_token:
            raise NotConnectedError("Remote ledger is not connected for this account")
        return user

    async def with_access_token(self, user_id: str, fn: Callable[[str], Awaitable[T]]) -> T:
        """
        Run fn with the user's access token, refreshing once if it's rejected.

        Args:
            user_id: Local user whose credential to use
            fn: Coroutine function taking the access token

        Returns:
            Whatever fn returns

        Raises:
            NotConnectedError: User has no credential
            UnauthenticatedError: Token rejected and refresh failed, or the
                retry was rejected too
        """
        user = await self._load_connected_user(user_id)

        try:
            return await fn(user.access_token)  # type: ignore[arg-type]
        except UnauthenticatedError:
            logger.warning(f"Access token rejected for user {user_id}, attempting refresh")
            refreshed = await self.refresh(user)
            if refreshed is None:
                raise
            return await fn(refreshed)

    async def _token_request(self, form: dict) -> dict:
        """POST to the OAuth token endpoint; returns the decoded body or {} on failure."""
        async with httpx.AsyncClient(
            base_url=self._settings.oauth_base,
            timeout=self._settings.request_timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post("/oauth/token", data=form)
            except httpx.RequestError as e:
                logger.warning(f"Token endpoint unreachable: {e}")
                return {}

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.is_success or not isinstance(data, dict) or not data.get("access_token"):
            message = ""
            if isinstance(data, dict):
                message = data.get("error_description") or first_error_message(data)
            logger.warning(
                f"Token endpoint failed with status {response.status_code}: {message or 'no access token'}"
            )
            return {}
        return data

    def _apply_token(self, user: User, data: dict) -> None:
        user.access_token = data["access_token"]
        if data.get("refresh_token"):
            user.refresh_token = data["refresh_token"]
        user.token_type = data.get("token_type") or user.token_type or "bearer"
        expires_in = data.get("expires_in")
        try:
            user.expires_at = utcnow() + timedelta(seconds=float(expires_in)) if expires_in else None
        except (TypeError, ValueError):
            user.expires_at = None

    async def refresh(self, user: User) -> str | None:
        """
        Exchange the user's refresh token for a new access token.

        Persists the new credential on success.

        Returns:
            The new access token, or None if refresh isn't possible or failed
        """
        if not self._settings.can_refresh or not user.refresh_token:
            logger.info(f"Cannot refresh token for user {user.id}: no client credentials or refresh token")
            return None

        data = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": user.refresh_token,
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
        })

        if not data:
            return None

        self._apply_token(user, data)
        await self._store.save_user(user)
        logger.info(f"Refreshed remote ledger token for user {user.id}")
        return user.access_token

    async def connect(self, user_id: str, code: str, redirect_uri: str) -> User:
        """
        Link a local user to a remote identity from an OAuth authorization code.

        Exchanges the code, confirms the identity with get_current_user, and
        stores the remote id with the credential.

        Raises:
            NotFoundError: Unknown local user
            BillSyncError: Exchange failed, or the remote identity already
                belongs to another local user
        """
        user = await self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if not self._settings.can_refresh:
            raise BillSyncError("OAuth client credentials are not configured")

        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "redirect_uri": redirect_uri,
        })
        if not data:
            raise BillSyncError("Failed to exchange authorization code")

        profile = await self._ledger.get_current_user(data["access_token"])
        remote_id = str(profile["id"]) if profile.get("id") else None
        if not remote_id:
            raise BillSyncError("Unable to fetch remote ledger profile")

        owner = await self._store.find_user_by_remote_id(remote_id)
        if owner is not None and owner.id != user.id:
            raise BillSyncError("This remote account is already linked to another user")

        user.remote_id = remote_id
        self._apply_token(user, data)
        if not user.name.strip():
            user.name = remote_display_name(profile)
        await self._store.save_user(user)

        logger.info(f"Linked user {user.id} to remote identity {remote_id}")
        return user


def remote_display_name(profile: dict) -> str:
    """Human-readable name for a remote profile or group member."""
    first = (profile.get("first_name") or "").strip()
    last = (profile.get("last_name") or "").strip()
    full = " ".join(part for part in (first, last) if part)
    if full:
        return full
    email = (profile.get("email") or "").strip()
    if email:
        return email
    return f"Remote user {profile.get('id') or ''}".strip()
