# ABOUTME: HTTP client for the remote shared-expense ledger
# ABOUTME: Handles nested form encoding, error envelopes, and error classification

import logging
import math
from datetime import datetime, timezone
from typing import Any

import httpx

from billsync.exceptions import (
    ForbiddenError,
    RateLimitedError,
    RemoteLedgerError,
    UnauthenticatedError,
    UpstreamError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

# Message fragments used to classify failures (matched lowercase)
RATE_LIMIT_TERMS = ("rate limit", "too many requests", "throttl")
UNAUTHENTICATED_TERMS = ("unauthorized", "not logged in", "invalid token", "token expired", "invalid_grant")
FORBIDDEN_TERMS = ("forbidden", "not allowed", "permission", "access denied")
NOT_FOUND_TERMS = ("not found", "does not exist", "no such")


def encode_form(value: Any, prefix: str | None = None) -> dict[str, str]:
    """
    Flatten a nested payload into the ledger's bracketed form keys.

    Lists and dicts nest as ``key[idx][field]``; None values are omitted and
    booleans are sent as ``true``/``false``.

    Args:
        value: Payload to encode (usually a dict)
        prefix: Key prefix for the current nesting level

    Returns:
        Flat mapping of form keys to string values
    """
    form: dict[str, str] = {}
    if value is None:
        return form

    if isinstance(value, (list, tuple)):
        for idx, item in enumerate(value):
            key = f"{prefix}[{idx}]" if prefix else str(idx)
            form.update(encode_form(item, key))
        return form

    if isinstance(value, dict):
        for k, v in value.items():
            key = f"{prefix}[{k}]" if prefix else str(k)
            form.update(encode_form(v, key))
        return form

    if prefix:
        if isinstance(value, bool):
            form[prefix] = "true" if value else "false"
        else:
            form[prefix] = str(value)
    return form


def has_error_envelope(data: Any) -> bool:
    """
    Check whether a decoded response body reports a failure.

    The ledger may answer 200 with an error string, a non-empty errors
    list or dict, or ``success: false``.
    """
    if not isinstance(data, dict):
        return False
    error = data.get("error")
    if isinstance(error, str) and error.strip():
        return True
    errors = data.get("errors")
    if isinstance(errors, (list, dict)) and len(errors) > 0:
        return True
    return data.get("success") is False


def first_error_message(data: Any) -> str:
    """Extract one human-readable message from whichever error shape is present."""
    if not isinstance(data, dict):
        return ""

    error = data.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()

    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict):
            for val in first.values():
                candidates = val if isinstance(val, list) else [val]
                for candidate in candidates:
                    if isinstance(candidate, str) and candidate:
                        return candidate

    if isinstance(errors, dict):
        for val in errors.values():
            if isinstance(val, list) and val and isinstance(val[0], str):
                return val[0]
            if isinstance(val, str):
                return val

    return ""


def classify_error(message: str, status_code: int | None = None) -> type[RemoteLedgerError]:
    """
    Map a failure message and HTTP status to an error kind.

    Args:
        message: Message extracted from the response
        status_code: HTTP status, if a response was received

    Returns:
        The RemoteLedgerError subclass to raise
    """
    text = (message or "").lower()

    if status_code == 429 or any(term in text for term in RATE_LIMIT_TERMS):
        return RateLimitedError
    if status_code == 401 or any(term in text for term in UNAUTHENTICATED_TERMS):
        return UnauthenticatedError
    if status_code == 403 or any(term in text for term in FORBIDDEN_TERMS):
        return ForbiddenError
    if status_code == 404 or any(term in text for term in NOT_FOUND_TERMS):
        return UpstreamUnavailableError
    return UpstreamError


def parse_remote_date(value: Any) -> datetime | None:
    """
    Parse a timestamp as the ledger reports it.

    Accepts datetimes, epoch seconds or milliseconds (numbers or numeric
    strings), and ISO-8601 strings. Naive values are taken as UTC.

    Returns:
        Aware UTC datetime, or None if the value can't be parsed
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return parse_remote_date(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class RemoteLedgerClient:
    """
    Authenticated request/response wrapper for the remote ledger API.

    The access token is passed per call so a TokenBroker can swap it after a
    refresh without rebuilding the client.
    """

    def __init__(
        self,
        api_base: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_base,
                timeout=self._timeout,
                follow_redirects=True,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def call(
        self,
        endpoint: str,
        token: str,
        method: str = "GET",
        query: dict | None = None,
        body: dict | None = None,
    ) -> dict:
        """
        Make an authenticated request and return the decoded JSON body.

        Args:
            endpoint: Path below the API base (e.g. "/get_expenses")
            token: Bearer access token
            method: HTTP method
            query: Query parameters; None and empty values are dropped
            body: Payload, form-encoded for non-GET requests

        Returns:
            Decoded response body

        Raises:
            RemoteLedgerError: Subclass chosen by classify_error
        """
        method = method.upper()
        params = {
            key: value
            for key, value in (query or {}).items()
            if value is not None and value != ""
        }
        headers = {"Authorization": f"Bearer {token}"}
        data = encode_form(body) if body and method != "GET" else None

        logger.debug(f"{method} {endpoint} params={params}")
        client = self._get_client()
        try:
            response = await client.request(
                method, endpoint, params=params, data=data, headers=headers
            )
        except httpx.RequestError as e:
            raise UpstreamUnavailableError(f"Remote ledger unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_success and not has_error_envelope(payload):
            return payload if isinstance(payload, dict) else {"data": payload}

        message = first_error_message(payload) or (
            f"Remote ledger request failed ({response.status_code})"
        )
        error_cls = classify_error(message, response.status_code)
        logger.debug(f"{method} {endpoint} failed: {error_cls.__name__}: {message}")
        raise error_cls(
            message,
            status_code=response.status_code,
            payload=payload if isinstance(payload, dict) else None,
        )

    async def get_current_user(self, token: str) -> dict:
        """Fetch the profile that owns the token."""
        data = await self.call("/get_current_user", token)
        return data.get("user") or {}

    async def get_expenses(
        self,
        token: str,
        group_id: str,
        limit: int,
        offset: int = 0,
        updated_after: datetime | None = None,
    ) -> list[dict]:
        """
        Fetch one page of a group's expenses.

        updated_after is sent as integer epoch seconds.
        """
        query: dict = {"group_id": group_id, "limit": limit, "offset": offset}
        if updated_after is not None:
            query["updated_after"] = int(updated_after.timestamp())
        data = await self.call("/get_expenses", token, query=query)
        expenses = data.get("expenses")
        return expenses if isinstance(expenses, list) else []

    async def create_expense(self, token: str, payload: dict) -> dict:
        """Create an expense and return the created record."""
        data = await self.call("/create_expense", token, method="POST", body=payload)
        return _first_expense(data)

    async def update_expense(self, token: str, expense_id: str, payload: dict) -> dict:
        data = await self.call(
            f"/update_expense/{expense_id}", token, method="POST", body=payload
        )
        return _first_expense(data)

    async def delete_expense(self, token: str, expense_id: str) -> None:
        await self.call(f"/delete_expense/{expense_id}", token, method="POST")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


def _first_expense(data: dict) -> dict:
    expenses = data.get("expenses")
    if isinstance(expenses, list) and expenses and isinstance(expenses[0], dict):
        return expenses[0]
    expense = data.get("expense")
    return expense if isinstance(expense, dict) else {}
