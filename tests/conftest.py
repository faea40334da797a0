# ABOUTME: Pytest fixtures for billsync tests
# ABOUTME: Provides a fake remote ledger over httpx.MockTransport and a seeded store

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qsl

import httpx
import pytest

from billsync.auth import TokenBroker
from billsync.bills import build_totals
from billsync.config import Settings
from billsync.engine import SyncEngine
from billsync.ledger import RemoteLedgerClient
from billsync.storage import MemoryStore
from billsync.types import Bill, BillItem, Household, User

API_BASE = "https://ledger.test/api/v3.0"
OAUTH_BASE = "https://ledger.test"
GROUP_ID = "77"

USER_ROW = re.compile(r"^users\[(\d+)\]\[(\w+)\]$")


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeLedger:
    """In-memory stand-in for the remote ledger's REST API."""

    def __init__(self) -> None:
        self.expenses: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.valid_tokens = {"token-alice", "token-bob"}
        self.refresh_tokens = {"refresh-alice": "token-alice-2"}
        self.auth_codes = {"good-code": ("token-new", {"id": 601, "first_name": "Nina", "last_name": "New"})}
        self.profiles = {"token-alice": {"id": 501}, "token-alice-2": {"id": 501}}
        self.queued: dict[str, list[httpx.Response]] = {}
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._next_id = 9000

    def tick(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now

    def queue(self, endpoint: str, response: httpx.Response) -> None:
        """Answer the next request to endpoint (e.g. "delete_expense") with response."""
        self.queued.setdefault(endpoint, []).append(response)

    def add_expense(
        self,
        expense_id: str,
        shares: list[tuple[int, str, str]],
        cost: str,
        description: str = "Groceries",
        updated_at: datetime | None = None,
        **extra,
    ) -> dict:
        """Add a remote expense; shares are (remote user id, paid, owed)."""
        expense = {
            "id": int(expense_id),
            "group_id": int(GROUP_ID),
            "description": description,
            "cost": cost,
            "payment": False,
            "deleted_at": None,
            "updated_at": iso(updated_at or self.tick()),
            "users": [
                {"user_id": uid, "paid_share": paid, "owed_share": owed}
                for uid, paid, owed in shares
            ],
        }
        expense.update(extra)
        self.expenses[str(expense_id)] = expense
        return expense

    def touch(self, expense_id: str, **changes) -> dict:
        """Simulate an edit by another ledger user."""
        expense = self.expenses[str(expense_id)]
        expense.update(changes)
        expense["updated_at"] = iso(self.tick())
        return expense

    def calls(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if endpoint in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            return self._token(dict(parse_qsl(request.content.decode())))

        endpoint = path.removeprefix("/api/v3.0/").split("/")[0]
        if self.queued.get(endpoint):
            return self.queued[endpoint].pop(0)

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": "Invalid API Request: you are not logged in"})

        if endpoint == "get_current_user":
            return httpx.Response(200, json={"user": self.profiles.get(token, {})})
        if endpoint == "get_expenses":
            return self._list(request.url.params)
        if endpoint == "create_expense":
            return self._create(dict(parse_qsl(request.content.decode())))
        if endpoint == "update_expense":
            return self._update(path.rsplit("/", 1)[-1], dict(parse_qsl(request.content.decode())))
        if endpoint == "delete_expense":
            expense = self.expenses.get(path.rsplit("/", 1)[-1])
            if expense is None:
                return httpx.Response(200, json={"success": False, "errors": {"base": ["Expense not found"]}})
            expense["deleted_at"] = iso(self.now)
            expense["updated_at"] = iso(self.tick())
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": "Not found"})

    def _token(self, form: dict) -> httpx.Response:
        if form.get("grant_type") == "refresh_token":
            new_token = self.refresh_tokens.get(form.get("refresh_token", ""))
            if not new_token:
                return httpx.Response(401, json={"error": "invalid_grant"})
            self.valid_tokens.add(new_token)
            return httpx.Response(200, json={
                "access_token": new_token,
                "refresh_token": "refresh-rotated",
                "token_type": "bearer",
                "expires_in": 3600,
            })
        if form.get("grant_type") == "authorization_code":
            found = self.auth_codes.get(form.get("code", ""))
            if not found:
                return httpx.Response(400, json={"error": "invalid_grant"})
            token, profile = found
            self.valid_tokens.add(token)
            self.profiles[token] = profile
            return httpx.Response(200, json={"access_token": token, "refresh_token": "refresh-new"})
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def _list(self, params: httpx.QueryParams) -> httpx.Response:
        limit = int(params.get("limit", 20))
        offset = int(params.get("offset", 0))
        after = params.get("updated_after")
        expenses = [e for e in self.expenses.values() if str(e["group_id"]) == params.get("group_id")]
        if after is not None:
            cutoff = datetime.fromtimestamp(int(after), tz=timezone.utc)
            expenses = [
                e for e in expenses
                if datetime.fromisoformat(e["updated_at"].replace("Z", "+00:00")) > cutoff
            ]
        expenses.sort(key=lambda e: e["updated_at"])
        return httpx.Response(200, json={"expenses": expenses[offset:offset + limit]})

    def _users_from_form(self, form: dict) -> list[dict]:
        rows: dict[int, dict] = {}
        for key, value in form.items():
            match = USER_ROW.match(key)
            if match:
                rows.setdefault(int(match.group(1)), {})[match.group(2)] = value
        return [
            {**row, "user_id": int(row["user_id"])}
            for _, row in sorted(rows.items())
        ]

    def _create(self, form: dict) -> httpx.Response:
        self._next_id += 1
        expense = {
            "id": self._next_id,
            "group_id": int(form["group_id"]),
            "description": form.get("description"),
            "details": form.get("details"),
            "cost": form.get("cost"),
            "currency_code": form.get("currency_code"),
            "payment": False,
            "deleted_at": None,
            "updated_at": iso(self.tick()),
            "users": self._users_from_form(form),
        }
        self.expenses[str(expense["id"])] = expense
        return httpx.Response(200, json={"expenses": [expense], "errors": {}})

    def _update(self, expense_id: str, form: dict) -> httpx.Response:
        expense = self.expenses.get(expense_id)
        if expense is None:
            return httpx.Response(404, json={"errors": {"base": ["Expense not found"]}})
        expense.update({
            "description": form.get("description"),
            "cost": form.get("cost"),
            "users": self._users_from_form(form),
            "updated_at": iso(self.tick()),
        })
        return httpx.Response(200, json={"expenses": [expense], "errors": {}})


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def transport(fake_ledger):
    return httpx.MockTransport(fake_ledger.handler)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_base=API_BASE,
        oauth_base=OAUTH_BASE,
        client_id="client-id",
        client_secret="client-secret",
        data_dir=tmp_path,
    )


@pytest.fixture
async def seeded():
    """Store with four users and one household linked to group 77 (dave has no remote id)."""
    store = MemoryStore()
    alice = User(id="alice", email="alice@example.com", name="Alice", remote_id="501",
                 access_token="token-alice", refresh_token="refresh-alice", token_type="bearer")
    bob = User(id="bob", email="bob@example.com", name="Bob", remote_id="502", access_token="token-bob")
    carol = User(id="carol", email="carol@example.com", name="Carol", remote_id="503")
    dave = User(id="dave", email="dave@example.com", name="Dave")
    for user in (alice, bob, carol, dave):
        await store.save_user(user)

    household = Household(
        id="home",
        name="Home",
        owner_id="alice",
        member_ids=["alice", "bob", "carol", "dave"],
        remote_group_id=GROUP_ID,
        remote_group_name="Flat",
    )
    await store.save_household(household)
    return SimpleNamespace(store=store, household=household, alice=alice, bob=bob, carol=carol, dave=dave)


@pytest.fixture
async def ledger_client(transport):
    client = RemoteLedgerClient(API_BASE, transport=transport)
    yield client
    await client.close()


@pytest.fixture
def broker(seeded, settings, ledger_client, transport):
    return TokenBroker(seeded.store, settings, ledger_client, transport=transport)


@pytest.fixture
def engine(seeded, settings, ledger_client, broker):
    return SyncEngine(seeded.store, ledger_client, broker, settings)


@pytest.fixture
def make_bill():
    """Factory for a three-way 10.00 bill between alice, bob, and carol."""

    def _make(household_id: str = "home", created_by: str = "alice", **overrides) -> Bill:
        items = overrides.pop("items", [
            BillItem(id="i1", name="Pizza", amount=Decimal("10.00"), split_between=["alice", "bob", "carol"]),
        ])
        fields = {
            "household_id": household_id,
            "bill_name": "Dinner",
            "items": items,
            "totals": build_totals(items),
            "total_amount": sum((i.amount for i in items), Decimal("0")),
            "created_by": created_by,
        }
        fields.update(overrides)
        return Bill(**fields)

    return _make
