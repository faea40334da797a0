# ABOUTME: Tests for the remote ledger HTTP client
# ABOUTME: Covers form encoding, error envelope variants, classification, and date parsing

from datetime import datetime, timezone

import httpx
import pytest

from billsync.exceptions import (
    ForbiddenError,
    RateLimitedError,
    UnauthenticatedError,
    UpstreamError,
    UpstreamUnavailableError,
)
from billsync.ledger import (
    RemoteLedgerClient,
    classify_error,
    encode_form,
    first_error_message,
    has_error_envelope,
    parse_remote_date,
)

API_BASE = "https://ledger.test/api/v3.0"


class TestEncodeForm:
    def test_flattens_nested_lists_and_dicts(self):
        form = encode_form({
            "cost": "10.00",
            "users": [
                {"user_id": 501, "owed_share": "3.34"},
                {"user_id": 502, "owed_share": "3.33"},
            ],
        })
        assert form == {
            "cost": "10.00",
            "users[0][user_id]": "501",
            "users[0][owed_share]": "3.34",
            "users[1][user_id]": "502",
            "users[1][owed_share]": "3.33",
        }

    def test_skips_none_and_lowercases_bools(self):
        assert encode_form({"a": None, "b": True, "c": False}) == {"b": "true", "c": "false"}


class TestErrorEnvelopes:
    @pytest.mark.parametrize("body", [
        {"error": "Invalid API Request"},
        {"errors": ["Cost must be positive"]},
        {"errors": {"base": ["Cost must be positive"]}},
        {"success": False},
    ])
    def test_detects_failure_shapes(self, body):
        assert has_error_envelope(body) is True

    @pytest.mark.parametrize("body", [
        {"expenses": [], "errors": {}},
        {"errors": []},
        {"error": "   "},
        {"success": True},
        [],
    ])
    def test_ignores_success_shapes(self, body):
        assert has_error_envelope(body) is False

    def test_message_from_error_string(self):
        assert first_error_message({"error": " Bad token "}) == "Bad token"

    def test_message_from_errors_list(self):
        assert first_error_message({"errors": ["first", "second"]}) == "first"

    def test_message_from_errors_list_of_dicts(self):
        assert first_error_message({"errors": [{"base": ["nested message"]}]}) == "nested message"

    def test_message_from_errors_dict(self):
        assert first_error_message({"errors": {"cost": ["must be positive"]}}) == "must be positive"
        assert first_error_message({"errors": {"base": "plain"}}) == "plain"

    def test_message_missing(self):
        assert first_error_message({"success": False}) == ""
        assert first_error_message("oops") == ""


class TestClassifyError:
    def test_rate_limit(self):
        assert classify_error("Too Many Requests") is RateLimitedError
        assert classify_error("", 429) is RateLimitedError

    def test_auth(self):
        assert classify_error("Invalid API Request: you are not logged in") is UnauthenticatedError
        assert classify_error("", 401) is UnauthenticatedError
        assert classify_error("You are not allowed to edit this expense") is ForbiddenError
        assert classify_error("", 403) is ForbiddenError

    def test_not_found(self):
        assert classify_error("Expense not found") is UpstreamUnavailableError
        assert classify_error("", 404) is UpstreamUnavailableError

    def test_everything_else(self):
        assert classify_error("Cost must be positive", 200) is UpstreamError
        assert classify_error("", 500) is UpstreamError


class TestParseRemoteDate:
    def test_iso_with_z(self):
        assert parse_remote_date("2026-01-01T00:01:00Z") == datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)

    def test_epoch_seconds_and_millis(self):
        expected = datetime(2026, 1, 1, tzinfo=timezone.utc)
        seconds = int(expected.timestamp())
        assert parse_remote_date(seconds) == expected
        assert parse_remote_date(seconds * 1000) == expected
        assert parse_remote_date(str(seconds)) == expected

    def test_naive_assumed_utc(self):
        assert parse_remote_date(datetime(2026, 1, 1)) == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_garbage(self):
        assert parse_remote_date("yesterday") is None
        assert parse_remote_date("") is None
        assert parse_remote_date(None) is None
        assert parse_remote_date(float("nan")) is None


class TestRemoteLedgerClient:
    @pytest.fixture
    def recorded(self):
        return []

    def make_client(self, recorded, response: httpx.Response) -> RemoteLedgerClient:
        def handler(request: httpx.Request) -> httpx.Response:
            recorded.append(request)
            return response

        return RemoteLedgerClient(API_BASE, transport=httpx.MockTransport(handler))

    async def test_get_sends_query_without_body(self, recorded):
        client = self.make_client(recorded, httpx.Response(200, json={"expenses": []}))
        await client.call(
            "/get_expenses", "tok", query={"group_id": "77", "limit": 100, "updated_after": None, "x": ""},
            body={"ignored": "yes"},
        )
        await client.close()

        request = recorded[0]
        assert request.method == "GET"
        assert request.headers["Authorization"] == "Bearer tok"
        assert dict(request.url.params) == {"group_id": "77", "limit": "100"}
        assert request.content == b""

    async def test_post_form_encodes_body(self, recorded):
        client = self.make_client(recorded, httpx.Response(200, json={"expenses": [{"id": 1}], "errors": {}}))
        expense = await client.create_expense("tok", {"cost": "5.00", "users": [{"user_id": 501}]})
        await client.close()

        body = recorded[0].content.decode()
        assert "users%5B0%5D%5Buser_id%5D=501" in body
        assert recorded[0].headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert expense == {"id": 1}

    async def test_error_envelope_on_200_raises(self, recorded):
        client = self.make_client(
            recorded, httpx.Response(200, json={"success": False, "errors": {"base": ["Expense not found"]}})
        )
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.delete_expense("tok", "9")
        await client.close()

        assert str(exc_info.value) == "Expense not found"
        assert exc_info.value.status_code == 200

    async def test_http_error_without_body(self, recorded):
        client = self.make_client(recorded, httpx.Response(502, text="Bad gateway"))
        with pytest.raises(UpstreamError, match=r"failed \(502\)"):
            await client.get_current_user("tok")
        await client.close()

    async def test_401_is_unauthenticated(self, recorded):
        client = self.make_client(recorded, httpx.Response(401, json={"error": "Invalid API Request: you are not logged in"}))
        with pytest.raises(UnauthenticatedError):
            await client.get_current_user("tok")
        await client.close()

    async def test_transport_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = RemoteLedgerClient(API_BASE, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamUnavailableError, match="unreachable"):
            await client.get_current_user("tok")
        await client.close()

    async def test_get_expenses_sends_epoch_seconds(self, recorded):
        client = self.make_client(recorded, httpx.Response(200, json={"expenses": [{"id": 1}]}))
        since = datetime(2026, 1, 1, 0, 0, 30, 500000, tzinfo=timezone.utc)
        expenses = await client.get_expenses("tok", "77", limit=100, offset=200, updated_after=since)
        await client.close()

        params = recorded[0].url.params
        assert params["updated_after"] == str(int(since.timestamp()))
        assert params["offset"] == "200"
        assert expenses == [{"id": 1}]

    async def test_redirect_loop_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.TooManyRedirects("Exceeded maximum allowed redirects", request=request)

        client = RemoteLedgerClient(API_BASE, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamUnavailableError, match="unreachable"):
            await client.get_expenses("tok", "77", limit=100)
        await client.close()
