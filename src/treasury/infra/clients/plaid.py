from __future__ import annotations

from decimal import Decimal
import json
import os
from typing import Any, Literal, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from treasury.core.errors import UpstreamError
from treasury.infra.clients.protocol import (
    AccountSnapshot,
    AggregatorTransaction,
    ItemInfo,
    RemovedTransaction,
    SyncPage,
    TokenExchange,
)

PlaidEnv = Literal["sandbox", "development", "production"]

PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"

# Codes that need the user to relink or re-authenticate; retrying won't help.
TERMINAL_ERROR_CODES = frozenset(
    {
        "ITEM_LOGIN_REQUIRED",
        "INVALID_ACCESS_TOKEN",
        "ITEM_NOT_FOUND",
        "ACCESS_NOT_GRANTED",
        "USER_PERMISSION_REVOKED",
        "INVALID_PUBLIC_TOKEN",
        "INVALID_CREDENTIALS",
    }
)


class PlaidClientError(UpstreamError):
    """Plaid API call failed."""


def classify_plaid_error(status: int | None, error_code: str | None) -> bool:
    """Return True when a Plaid failure is worth retrying."""
    if error_code in TERMINAL_ERROR_CODES:
        return False
    if status is None:
        return True
    if error_code in {"RATE_LIMIT_EXCEEDED", "INTERNAL_SERVER_ERROR"}:
        return True
    if error_code == MUTATION_DURING_PAGINATION:
        return True
    return status == 429 or status >= 500


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    model_config = ConfigDict(extra="allow")

    @classmethod
    def parse(cls, data: Any) -> Self:
        """Validate a response body.

        Raises:
            PlaidClientError: If the body does not have the expected shape
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise PlaidClientError(
                f"Malformed Plaid response ({cls.__name__}): "
                f"{e.error_count()} invalid field(s)",
                retryable=True,
            ) from e


class PlaidErrorBody(PlaidBaseModel):
    error_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    display_message: str | None = None


class LinkTokenCreateResponse(PlaidBaseModel):
    link_token: str


class PublicTokenExchangeResponse(PlaidBaseModel):
    access_token: str
    item_id: str


class ItemModel(PlaidBaseModel):
    item_id: str
    institution_id: str | None = None


class ItemGetResponse(PlaidBaseModel):
    item: ItemModel


class InstitutionModel(PlaidBaseModel):
    name: str | None = None


class InstitutionGetByIdResponse(PlaidBaseModel):
    institution: InstitutionModel | None = None


class BalancesModel(PlaidBaseModel):
    current: Decimal | None = None
    available: Decimal | None = None
    iso_currency_code: str | None = None


class AccountModel(PlaidBaseModel):
    account_id: str
    name: str | None = None
    official_name: str | None = None
    mask: str | None = None
    subtype: str | None = None
    type: str | None = None
    balances: BalancesModel = Field(default_factory=BalancesModel)

    def to_typed(self) -> AccountSnapshot:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "official_name": self.official_name,
            "mask": self.mask,
            "type": self.type,
            "subtype": self.subtype,
            "current_balance_cents": _to_cents(self.balances.current),
            "available_balance_cents": _to_cents(self.balances.available),
            "iso_currency_code": self.balances.iso_currency_code,
        }


class AccountsGetResponse(PlaidBaseModel):
    accounts: list[AccountModel] = Field(default_factory=list)


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None = None
    date: str
    name: str
    merchant_name: str | None = None
    pending: bool = False

    def to_typed(self) -> AggregatorTransaction:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "amount": self.amount,
            "iso_currency_code": self.iso_currency_code,
            "date": self.date,
            "name": self.name,
            "merchant_name": self.merchant_name,
            "pending": self.pending,
            "raw": self.model_dump(mode="json"),
        }


class RemovedTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str | None = None

    def to_typed(self) -> RemovedTransaction:
        return {"transaction_id": self.transaction_id, "account_id": self.account_id}


class TransactionsSyncResponse(PlaidBaseModel):
    added: list[PlaidTransactionModel] = Field(default_factory=list)
    modified: list[PlaidTransactionModel] = Field(default_factory=list)
    removed: list[RemovedTransactionModel] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_sync_page(self, *, fallback_cursor: str | None) -> SyncPage:
        return {
            "added": [txn.to_typed() for txn in self.added],
            "modified": [txn.to_typed() for txn in self.modified],
            "removed": [txn.to_typed() for txn in self.removed],
            "next_cursor": self.next_cursor or (fallback_cursor or ""),
            "has_more": self.has_more,
        }


def _to_cents(value: Decimal | None) -> int | None:
    if value is None:
        return None
    return int((value * 100).to_integral_value())


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        client_name: str = "Chapter Treasury",
        products: list[str] | None = None,
        timeout_seconds: float = 30.0,
        webhook_url: str | None = None,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._client_name = client_name
        self._products = products or ["transactions"]
        self._timeout_seconds = timeout_seconds
        self._webhook_url = webhook_url

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(
        cls,
        *,
        env: PlaidEnv | None = None,
        timeout_seconds: float = 30.0,
    ) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox; ignored when env is given)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = (env or os.getenv("PLAID_ENV", "sandbox")).lower()
        if env_str not in PLAID_ENV_MAP:
            raise ValueError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{env.upper()}_SECRET")
        client_name = os.getenv("PLAID_CLIENT_NAME", "Chapter Treasury")
        return cls(
            client_id=client_id,
            secret=secret,
            env=env,
            client_name=client_name,
            timeout_seconds=timeout_seconds,
            webhook_url=os.getenv("PLAID_WEBHOOK_URL") or None,
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise ValueError(f"Missing required environment variable: {name}")
        return value

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise ValueError(f"Unsupported Plaid environment: {self._env!r}") from e

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        """Parse JSON response from Plaid API.

        Raises:
            PlaidClientError: If JSON parsing fails
        """
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}", retryable=True
            ) from e

    def _error_from_http(self, status: int, body: str) -> PlaidClientError:
        try:
            error = PlaidErrorBody.parse(json.loads(body))
        except (ValueError, PlaidClientError):
            error = PlaidErrorBody()
        code = error.error_code
        message = error.error_message or body[:200] or "no response body"
        return PlaidClientError(
            f"Plaid API error ({status}{', ' + code if code else ''}): {message}",
            code=code,
            retryable=classify_plaid_error(status, code),
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        body_payload = {
            "client_id": self._client_id,
            "secret": self._secret,
            **payload,
        }
        data = json.dumps(body_payload).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise self._error_from_http(e.code, err_body) from e
        except TimeoutError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(
                f"Timed out calling Plaid API {path}", code="TIMEOUT", retryable=True
            ) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            if isinstance(e.reason, TimeoutError):
                raise PlaidClientError(
                    f"Timed out calling Plaid API {path}",
                    code="TIMEOUT",
                    retryable=True,
                ) from e
            raise PlaidClientError(
                f"Network error calling Plaid API: {e}", retryable=True
            ) from e

        return self._parse_json_response(body)

    # High-level APIs -----------------------------------------------------

    def create_link_token(
        self,
        *,
        user_id: str,
        redirect_uri: str | None = None,
        country_codes: list[str] | None = None,
        language: str = "en",
    ) -> str:
        """Create a Plaid Link token and return it."""
        payload: dict[str, Any] = {
            "client_name": self._client_name,
            "language": language,
            "country_codes": country_codes or ["US"],
            "user": {"client_user_id": user_id},
            "products": self._products,
        }
        if redirect_uri is not None:
            payload["redirect_uri"] = redirect_uri
        if self._webhook_url is not None:
            payload["webhook"] = self._webhook_url

        resp = LinkTokenCreateResponse.parse(self._post("/link/token/create", payload))
        return resp.link_token

    def exchange_public_token(self, public_token: str) -> TokenExchange:
        """Exchange a Link public_token for an access_token."""
        resp = PublicTokenExchangeResponse.parse(
            self._post("/item/public_token/exchange", {"public_token": public_token})
        )
        return {"access_token": resp.access_token, "item_id": resp.item_id}

    def get_item_info(self, access_token: str) -> ItemInfo:
        """Return item and institution information for an access token."""
        item_resp = ItemGetResponse.parse(
            self._post("/item/get", {"access_token": access_token})
        )

        item_id = item_resp.item.item_id
        institution_id = item_resp.item.institution_id
        institution_name: str | None = None

        if institution_id:
            inst_resp = InstitutionGetByIdResponse.parse(
                self._post(
                    "/institutions/get_by_id",
                    {"institution_id": institution_id, "country_codes": ["US"]},
                )
            )
            if inst_resp.institution and inst_resp.institution.name:
                institution_name = inst_resp.institution.name

        return {
            "item_id": item_id,
            "institution_id": institution_id,
            "institution_name": institution_name,
        }

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 100,
    ) -> SyncPage:
        """Thin wrapper around Plaid's /transactions/sync endpoint."""
        payload: dict[str, Any] = {
            "access_token": access_token,
            "count": count,
        }
        if cursor is not None:
            payload["cursor"] = cursor

        resp = TransactionsSyncResponse.parse(self._post("/transactions/sync", payload))
        return resp.to_sync_page(fallback_cursor=cursor)

    def get_accounts(self, access_token: str) -> list[AccountSnapshot]:
        """Return accounts and cached balances using /accounts/get."""
        resp = AccountsGetResponse.parse(
            self._post("/accounts/get", {"access_token": access_token})
        )
        return [account.to_typed() for account in resp.accounts]
