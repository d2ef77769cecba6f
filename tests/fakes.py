"""Test doubles shared across the suite."""

from __future__ import annotations

from collections.abc import Iterable

from treasury.infra.clients.protocol import (
    AccountSnapshot,
    AggregatorTransaction,
    ItemInfo,
    RemovedTransaction,
    SyncPage,
    TokenExchange,
)

CHAPTER_ID = "chapter_alpha"
OTHER_CHAPTER_ID = "chapter_beta"


def make_txn(
    transaction_id: str,
    *,
    amount: float = 12.5,
    date: str = "2025-01-15",
    name: str = "Campus Coffee",
    account_id: str = "acc_1",
) -> AggregatorTransaction:
    """Create an aggregator transaction."""
    return {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "iso_currency_code": "USD",
        "date": date,
        "name": name,
        "merchant_name": None,
        "pending": False,
        "raw": {"transaction_id": transaction_id, "amount": amount},
    }


def make_page(
    *,
    added: Iterable[AggregatorTransaction] = (),
    modified: Iterable[AggregatorTransaction] = (),
    removed: Iterable[str] = (),
    next_cursor: str,
    has_more: bool = False,
) -> SyncPage:
    """Create one sync page."""
    removed_txns: list[RemovedTransaction] = [
        {"transaction_id": txn_id, "account_id": "acc_1"} for txn_id in removed
    ]
    return {
        "added": list(added),
        "modified": list(modified),
        "removed": removed_txns,
        "next_cursor": next_cursor,
        "has_more": has_more,
    }


def make_account(
    account_id: str = "acc_1", *, current_balance_cents: int | None = 150000
) -> AccountSnapshot:
    return {
        "account_id": account_id,
        "name": "Chapter Checking",
        "official_name": None,
        "mask": "0001",
        "type": "depository",
        "subtype": "checking",
        "current_balance_cents": current_balance_cents,
        "available_balance_cents": current_balance_cents,
        "iso_currency_code": "USD",
    }


class FakeAggregator:
    """In-memory aggregator.

    Sync results are queued per access token and returned (or raised, for
    exceptions) in order. Once a token's queue is empty, sync returns an
    empty page that keeps the cursor where it is.
    """

    def __init__(self) -> None:
        self._sync_results: dict[str, list[SyncPage | Exception]] = {}
        self.cursors_used: list[str | None] = []
        self.tokens_used: list[str] = []
        self.accounts: list[AccountSnapshot] = [make_account()]
        self.accounts_error: Exception | None = None
        self.exchange_result: TokenExchange = {
            "access_token": "access-sandbox-1",
            "item_id": "item_1",
        }
        self.exchange_error: Exception | None = None
        self.item_info: ItemInfo = {
            "item_id": "item_1",
            "institution_id": "ins_1",
            "institution_name": "First Campus Bank",
        }
        self.item_info_error: Exception | None = None
        self.exchange_calls: list[str] = []
        self.link_token_users: list[str] = []

    def queue(self, access_token: str, *results: SyncPage | Exception) -> None:
        self._sync_results.setdefault(access_token, []).extend(results)

    def create_link_token(self, *, user_id: str) -> str:
        self.link_token_users.append(user_id)
        return f"link-sandbox-{user_id}"

    def exchange_public_token(self, public_token: str) -> TokenExchange:
        self.exchange_calls.append(public_token)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_result

    def get_item_info(self, access_token: str) -> ItemInfo:
        if self.item_info_error is not None:
            raise self.item_info_error
        return self.item_info

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 100,
    ) -> SyncPage:
        self.cursors_used.append(cursor)
        self.tokens_used.append(access_token)
        pending = self._sync_results.get(access_token)
        if not pending:
            return make_page(next_cursor=cursor or "")
        result = pending.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def get_accounts(self, access_token: str) -> list[AccountSnapshot]:
        if self.accounts_error is not None:
            raise self.accounts_error
        return list(self.accounts)
