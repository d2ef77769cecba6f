from __future__ import annotations

from typing import Any
import urllib.error

import pytest

from treasury.core.errors import UpstreamError
from treasury.infra.clients import plaid as plaid_module
from treasury.infra.clients.plaid import (
    MUTATION_DURING_PAGINATION,
    PlaidClient,
    PlaidClientError,
    TransactionsSyncResponse,
    classify_plaid_error,
)


def create_client() -> PlaidClient:
    return PlaidClient(client_id="client", secret="secret", timeout_seconds=5.0)


class RecordingPlaidClient(PlaidClient):
    """PlaidClient with _post replaced by canned responses."""

    def __init__(self, responses: dict[str, dict[str, Any]]) -> None:
        super().__init__(client_id="client", secret="secret")
        self._responses = responses
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((path, payload))
        return self._responses[path]


class TestClassifyPlaidError:
    @pytest.mark.parametrize(
        "code",
        [
            "ITEM_LOGIN_REQUIRED",
            "INVALID_ACCESS_TOKEN",
            "ITEM_NOT_FOUND",
            "ACCESS_NOT_GRANTED",
            "USER_PERMISSION_REVOKED",
        ],
    )
    def test_terminal_codes_are_not_retryable(self, code: str) -> None:
        assert classify_plaid_error(400, code) is False

    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (None, None),
            (429, "RATE_LIMIT_EXCEEDED"),
            (500, "INTERNAL_SERVER_ERROR"),
            (503, None),
            (400, MUTATION_DURING_PAGINATION),
        ],
    )
    def test_transient_failures_are_retryable(
        self, status: int | None, code: str | None
    ) -> None:
        assert classify_plaid_error(status, code) is True

    def test_other_client_errors_are_not_retryable(self) -> None:
        assert classify_plaid_error(400, "INVALID_FIELD") is False


class TestErrorFromHttp:
    def test_parses_plaid_error_body(self) -> None:
        client = create_client()
        body = (
            '{"error_type": "ITEM_ERROR", "error_code": "ITEM_LOGIN_REQUIRED", '
            '"error_message": "the login details of this item have changed"}'
        )

        error = client._error_from_http(400, body)

        assert isinstance(error, UpstreamError)
        assert error.code == "ITEM_LOGIN_REQUIRED"
        assert error.retryable is False
        assert "login details" in str(error)

    def test_non_object_error_body_falls_back_to_status(self) -> None:
        client = create_client()

        error = client._error_from_http(503, "[1, 2]")

        assert error.code is None
        assert error.retryable is True

    def test_non_json_body_is_retryable_for_5xx(self) -> None:
        client = create_client()

        error = client._error_from_http(502, "<html>bad gateway</html>")

        assert error.code is None
        assert error.retryable is True


class TestPost:
    def test_timeout_is_retryable_upstream_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fake_urlopen(*args: Any, **kwargs: Any) -> Any:
            raise urllib.error.URLError(TimeoutError("timed out"))

        monkeypatch.setattr(plaid_module.urllib.request, "urlopen", fake_urlopen)

        with pytest.raises(PlaidClientError) as exc_info:
            create_client().sync_transactions("access", cursor="c0")

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable is True


class TestTransactionsSync:
    def test_sync_transactions_builds_page(self) -> None:
        client = RecordingPlaidClient(
            {
                "/transactions/sync": {
                    "added": [
                        {
                            "transaction_id": "txn_1",
                            "account_id": "acc_1",
                            "amount": 12.5,
                            "date": "2025-01-15",
                            "name": "Campus Coffee",
                            "category": ["Food and Drink"],
                        }
                    ],
                    "modified": [],
                    "removed": [{"transaction_id": "txn_0"}],
                    "next_cursor": "c1",
                    "has_more": True,
                    "request_id": "req_1",
                }
            }
        )

        page = client.sync_transactions("access", cursor="c0", count=50)

        path, payload = client.calls[0]
        assert path == "/transactions/sync"
        assert payload == {"access_token": "access", "cursor": "c0", "count": 50}
        assert page["next_cursor"] == "c1"
        assert page["has_more"] is True
        assert page["added"][0]["transaction_id"] == "txn_1"
        assert page["added"][0]["raw"]["category"] == ["Food and Drink"]
        assert page["removed"] == [{"transaction_id": "txn_0", "account_id": None}]

    def test_initial_sync_omits_cursor(self) -> None:
        client = RecordingPlaidClient(
            {"/transactions/sync": {"next_cursor": "c1", "has_more": False}}
        )

        client.sync_transactions("access")

        assert "cursor" not in client.calls[0][1]

    def test_missing_next_cursor_keeps_previous_cursor(self) -> None:
        response = TransactionsSyncResponse.parse({"added": [], "has_more": False})

        page = response.to_sync_page(fallback_cursor="c0")

        assert page["next_cursor"] == "c0"


class TestAccountsAndItems:
    def test_get_accounts_converts_balances_to_cents(self) -> None:
        client = RecordingPlaidClient(
            {
                "/accounts/get": {
                    "accounts": [
                        {
                            "account_id": "acc_1",
                            "name": "Checking",
                            "mask": "0001",
                            "type": "depository",
                            "balances": {
                                "current": 1520.35,
                                "available": None,
                                "iso_currency_code": "USD",
                            },
                        }
                    ]
                }
            }
        )

        accounts = client.get_accounts("access")

        assert accounts[0]["current_balance_cents"] == 152035
        assert accounts[0]["available_balance_cents"] is None
        assert accounts[0]["iso_currency_code"] == "USD"

    def test_get_item_info_resolves_institution_name(self) -> None:
        client = RecordingPlaidClient(
            {
                "/item/get": {"item": {"item_id": "item_1", "institution_id": "ins_1"}},
                "/institutions/get_by_id": {"institution": {"name": "Campus Bank"}},
            }
        )

        info = client.get_item_info("access")

        assert info == {
            "item_id": "item_1",
            "institution_id": "ins_1",
            "institution_name": "Campus Bank",
        }

    def test_malformed_accounts_response_is_retryable_upstream_error(self) -> None:
        client = RecordingPlaidClient(
            {"/accounts/get": {"accounts": [{"name": "Checking", "balances": "n/a"}]}}
        )

        with pytest.raises(PlaidClientError) as exc_info:
            client.get_accounts("access")

        assert exc_info.value.retryable is True
        assert "AccountsGetResponse" in str(exc_info.value)

    def test_malformed_item_response_is_upstream_error(self) -> None:
        client = RecordingPlaidClient({"/item/get": {"item": None}})

        with pytest.raises(UpstreamError):
            client.get_item_info("access")

    def test_get_item_info_without_institution_skips_lookup(self) -> None:
        client = RecordingPlaidClient({"/item/get": {"item": {"item_id": "item_1"}}})

        info = client.get_item_info("access")

        assert info["institution_name"] is None
        assert [path for path, _ in client.calls] == ["/item/get"]


class TestFromEnv:
    def test_missing_secret_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PLAID_CLIENT_ID", "client")
        monkeypatch.setenv("PLAID_ENV", "sandbox")
        monkeypatch.delenv("PLAID_SANDBOX_SECRET", raising=False)

        with pytest.raises(ValueError, match="PLAID_SANDBOX_SECRET"):
            PlaidClient.from_env()

    def test_reads_env_specific_secret(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PLAID_CLIENT_ID", "client")
        monkeypatch.setenv("PLAID_ENV", "production")
        monkeypatch.setenv("PLAID_PRODUCTION_SECRET", "prod-secret")

        client = PlaidClient.from_env(timeout_seconds=3.0)

        assert client.env == "production"

    def test_explicit_env_overrides_plaid_env(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PLAID_CLIENT_ID", "client")
        monkeypatch.setenv("PLAID_ENV", "sandbox")
        monkeypatch.delenv("PLAID_SANDBOX_SECRET", raising=False)
        monkeypatch.setenv("PLAID_DEVELOPMENT_SECRET", "dev-secret")

        client = PlaidClient.from_env(env="development")

        assert client.env == "development"
