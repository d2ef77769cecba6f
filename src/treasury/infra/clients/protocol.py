"""Narrow interface the sync engine needs from a bank-data aggregator."""

from __future__ import annotations

from typing import Any, Protocol, TypedDict


class AggregatorTransaction(TypedDict):
    """Transaction as reported by the aggregator.

    ``amount`` follows the aggregator's convention: positive values are
    money leaving the account.
    """

    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None
    date: str
    name: str
    merchant_name: str | None
    pending: bool
    raw: dict[str, Any]


class RemovedTransaction(TypedDict):
    transaction_id: str
    account_id: str | None


class SyncPage(TypedDict):
    """One page of incremental changes."""

    added: list[AggregatorTransaction]
    modified: list[AggregatorTransaction]
    removed: list[RemovedTransaction]
    next_cursor: str
    has_more: bool


class ItemInfo(TypedDict):
    item_id: str
    institution_id: str | None
    institution_name: str | None


class TokenExchange(TypedDict):
    access_token: str
    item_id: str


class AccountSnapshot(TypedDict):
    account_id: str
    name: str | None
    official_name: str | None
    mask: str | None
    type: str | None
    subtype: str | None
    current_balance_cents: int | None
    available_balance_cents: int | None
    iso_currency_code: str | None


class AggregatorClient(Protocol):
    """Calls the sync engine makes against the aggregator."""

    def create_link_token(self, *, user_id: str) -> str: ...

    def exchange_public_token(self, public_token: str) -> TokenExchange: ...

    def get_item_info(self, access_token: str) -> ItemInfo: ...

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 100,
    ) -> SyncPage: ...

    def get_accounts(self, access_token: str) -> list[AccountSnapshot]: ...
