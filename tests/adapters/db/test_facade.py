from __future__ import annotations

from datetime import date, datetime
from typing import Any

import pytest

from fakes import CHAPTER_ID, OTHER_CHAPTER_ID, make_account
from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import (
    STAGING_NEW,
    STAGING_PROCESSED,
    STAGING_SKIPPED,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_RUNNING,
    BankConnection,
    ConnectionView,
    LedgerEntry,
)
from treasury.core.errors import ConflictError, NotFoundError
from treasury.core.hashing import compute_txn_hash


def staged_row(
    external_id: str = "txn_1",
    *,
    amount_cents: int = -1250,
    description: str = "Campus Coffee",
    chapter_id: str = CHAPTER_ID,
) -> dict[str, Any]:
    posted_at = date(2025, 1, 15)
    return {
        "chapter_id": chapter_id,
        "source": "PLAID",
        "external_id": external_id,
        "connection_id": None,
        "account_id": "acc_1",
        "hash": compute_txn_hash(
            external_id, "PLAID", posted_at, amount_cents, description
        ),
        "posted_at": posted_at,
        "amount_cents": amount_cents,
        "description": description,
        "raw_data": "{}",
    }


class TestConnectionStore:
    def test_create_connection_assigns_id_and_defaults(
        self, connection: BankConnection
    ) -> None:
        assert connection.connection_id
        assert connection.is_active is True
        assert connection.cursor is None
        assert connection.created_by == "user_treasurer"

    def test_create_connection_rejects_active_duplicate_item(
        self, db: DB, connection: BankConnection
    ) -> None:
        with pytest.raises(ConflictError):
            db.create_connection(
                chapter_id=OTHER_CHAPTER_ID,
                item_id=connection.item_id,
                access_token="access-other",
            )

    def test_create_connection_allows_relink_after_deactivation(
        self, db: DB, connection: BankConnection
    ) -> None:
        db.deactivate_connection(connection.connection_id, CHAPTER_ID)

        relinked = db.create_connection(
            chapter_id=CHAPTER_ID,
            item_id=connection.item_id,
            access_token="access-new",
        )

        assert relinked.connection_id != connection.connection_id

    def test_get_connection_hides_other_chapters(
        self, db: DB, connection: BankConnection
    ) -> None:
        with pytest.raises(NotFoundError):
            db.get_connection(connection.connection_id, OTHER_CHAPTER_ID)

    def test_get_active_connections_excludes_inactive(self, db: DB) -> None:
        first = db.create_connection(
            chapter_id=CHAPTER_ID, item_id="item_a", access_token="a"
        )
        second = db.create_connection(
            chapter_id=CHAPTER_ID, item_id="item_b", access_token="b"
        )
        db.create_connection(
            chapter_id=OTHER_CHAPTER_ID, item_id="item_c", access_token="c"
        )
        db.deactivate_connection(first.connection_id, CHAPTER_ID)

        active = db.get_active_connections(CHAPTER_ID)

        assert [c.connection_id for c in active] == [second.connection_id]
        assert len(db.list_connections(CHAPTER_ID)) == 2

    def test_update_cursor_writes_cursor_and_time(
        self, db: DB, connection: BankConnection
    ) -> None:
        synced_at = datetime(2025, 2, 1, 12, 0)

        db.update_cursor(connection.connection_id, "cursor_1", synced_at)

        loaded = db.get_connection(connection.connection_id, CHAPTER_ID)
        assert loaded.cursor == "cursor_1"
        assert loaded.last_synced_at == synced_at

    def test_update_cursor_unknown_connection_raises(self, db: DB) -> None:
        with pytest.raises(NotFoundError):
            db.update_cursor("missing", "cursor_1", datetime.now())

    def test_mark_and_clear_error(self, db: DB, connection: BankConnection) -> None:
        db.mark_error(connection.connection_id, "ITEM_LOGIN_REQUIRED", "relink")
        marked = db.get_connection(connection.connection_id, CHAPTER_ID)

        db.clear_error(connection.connection_id)
        cleared = db.get_connection(connection.connection_id, CHAPTER_ID)

        assert marked.error_code == "ITEM_LOGIN_REQUIRED"
        assert marked.error_message == "relink"
        assert cleared.error_code is None
        assert cleared.error_message is None

    def test_deactivate_other_chapter_raises_not_found(
        self, db: DB, connection: BankConnection
    ) -> None:
        with pytest.raises(NotFoundError):
            db.deactivate_connection(connection.connection_id, OTHER_CHAPTER_ID)

        assert db.get_connection(connection.connection_id, CHAPTER_ID).is_active

    def test_deactivate_also_deactivates_accounts(
        self, db: DB, connection: BankConnection
    ) -> None:
        db.save_accounts(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            accounts=[make_account()],
        )

        db.deactivate_connection(connection.connection_id, CHAPTER_ID)

        assert db.list_accounts(connection.connection_id) == []

    def test_connection_view_has_no_credential(
        self, connection: BankConnection
    ) -> None:
        data = ConnectionView.from_model(connection).to_dict()

        assert "access_token" not in data
        assert "access-sandbox-1" not in repr(connection)


class TestAccounts:
    def test_save_accounts_inserts_then_refreshes(
        self, db: DB, connection: BankConnection
    ) -> None:
        db.save_accounts(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            accounts=[make_account(current_balance_cents=100)],
        )
        written = db.save_accounts(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            accounts=[make_account(current_balance_cents=250)],
        )

        accounts = db.list_accounts(connection.connection_id)
        assert written == 1
        assert len(accounts) == 1
        assert accounts[0].current_balance_cents == 250
        assert accounts[0].last_balance_update is not None


class TestStagingUpsert:
    def test_insert_then_same_row_is_unchanged(self, db: DB) -> None:
        first_action, first_id = db.upsert_staged_transaction(
            staged_row(), reset_status=False
        )
        second_action, second_id = db.upsert_staged_transaction(
            staged_row(), reset_status=False
        )

        assert first_action == "inserted"
        assert second_action == "unchanged"
        assert first_id == second_id
        assert len(db.list_staged_transactions(CHAPTER_ID)) == 1

    def test_added_refreshes_pending_row_with_new_content(self, db: DB) -> None:
        db.upsert_staged_transaction(staged_row(), reset_status=False)

        action, _ = db.upsert_staged_transaction(
            staged_row(amount_cents=-1300), reset_status=False
        )

        row = db.get_staged_transaction(
            chapter_id=CHAPTER_ID, source="PLAID", external_id="txn_1"
        )
        assert action == "updated"
        assert row is not None
        assert row.amount_cents == -1300

    def test_added_leaves_processed_row_alone(self, db: DB) -> None:
        _, staged_id = db.upsert_staged_transaction(staged_row(), reset_status=False)
        db.reconcile_staged_row(staged_id, category_id=None, period_id=None)

        action, _ = db.upsert_staged_transaction(
            staged_row(amount_cents=-1300), reset_status=False
        )

        row = db.get_staged_transaction(
            chapter_id=CHAPTER_ID, source="PLAID", external_id="txn_1"
        )
        assert action == "unchanged"
        assert row is not None
        assert row.status == STAGING_PROCESSED
        assert row.amount_cents == -1250

    def test_modified_resets_processed_row_to_new(self, db: DB) -> None:
        _, staged_id = db.upsert_staged_transaction(staged_row(), reset_status=False)
        db.reconcile_staged_row(staged_id, category_id=None, period_id=None)
        new_row = staged_row(amount_cents=-1300)

        action, _ = db.upsert_staged_transaction(new_row, reset_status=True)

        row = db.get_staged_transaction(
            chapter_id=CHAPTER_ID, source="PLAID", external_id="txn_1"
        )
        assert action == "updated"
        assert row is not None
        assert row.status == STAGING_NEW
        assert row.processed_at is None
        assert row.hash == new_row["hash"]

    def test_same_external_id_in_other_chapter_is_separate(self, db: DB) -> None:
        db.upsert_staged_transaction(staged_row(), reset_status=False)

        action, _ = db.upsert_staged_transaction(
            staged_row(chapter_id=OTHER_CHAPTER_ID), reset_status=False
        )

        assert action == "inserted"


class TestSyncHistory:
    def test_start_then_complete(self, db: DB, connection: BankConnection) -> None:
        record = db.start_sync_history(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            cursor_before=None,
        )

        completed = db.complete_sync_history(
            record.sync_id, added=3, modified=1, removed=2, cursor_after="c1"
        )

        assert record.sync_status == SYNC_RUNNING
        assert completed.sync_status == SYNC_COMPLETED
        assert completed.transactions_added == 3
        assert completed.cursor_after == "c1"
        assert completed.completed_at is not None

    def test_record_is_finalized_only_once(
        self, db: DB, connection: BankConnection
    ) -> None:
        record = db.start_sync_history(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            cursor_before="c0",
        )
        db.fail_sync_history(record.sync_id, error_message="boom")

        with pytest.raises(ConflictError):
            db.complete_sync_history(
                record.sync_id, added=0, modified=0, removed=0, cursor_after="c1"
            )

        history = db.list_sync_history(CHAPTER_ID)
        assert history[0].sync_status == SYNC_FAILED
        assert history[0].cursor_after is None

    def test_finish_sync_advances_cursor_and_completes_record(
        self, db: DB, connection: BankConnection
    ) -> None:
        db.mark_error(connection.connection_id, "TIMEOUT", "slow")
        record = db.start_sync_history(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            cursor_before=None,
        )

        completed = db.finish_sync(
            record.sync_id,
            connection_id=connection.connection_id,
            cursor_after="c1",
            synced_at=datetime(2025, 1, 2),
            added=2,
            modified=0,
            removed=1,
            accounts_updated=1,
            pages_fetched=1,
        )

        loaded = db.get_connection(connection.connection_id, CHAPTER_ID)
        assert completed.sync_status == SYNC_COMPLETED
        assert completed.cursor_after == "c1"
        assert loaded.cursor == "c1"
        assert loaded.error_code is None

    def test_finish_sync_on_finalized_record_keeps_cursor(
        self, db: DB, connection: BankConnection
    ) -> None:
        record = db.start_sync_history(
            connection_id=connection.connection_id,
            chapter_id=CHAPTER_ID,
            cursor_before=None,
        )
        db.fail_sync_history(record.sync_id, error_message="boom")

        with pytest.raises(ConflictError):
            db.finish_sync(
                record.sync_id,
                connection_id=connection.connection_id,
                cursor_after="c1",
                synced_at=datetime(2025, 1, 2),
                added=0,
                modified=0,
                removed=0,
            )

        assert db.get_connection(connection.connection_id, CHAPTER_ID).cursor is None

    def test_list_sync_history_newest_first_and_limited(
        self, db: DB, connection: BankConnection
    ) -> None:
        ids = [
            db.start_sync_history(
                connection_id=connection.connection_id,
                chapter_id=CHAPTER_ID,
                cursor_before=None,
            ).sync_id
            for _ in range(3)
        ]

        history = db.list_sync_history(CHAPTER_ID, limit=2)

        assert [r.sync_id for r in history] == [ids[2], ids[1]]
        assert db.list_sync_history(OTHER_CHAPTER_ID) == []


class TestLedger:
    def test_reconcile_row_inserts_once(self, db: DB) -> None:
        _, staged_id = db.upsert_staged_transaction(staged_row(), reset_status=False)

        first = db.reconcile_staged_row(staged_id, category_id=None, period_id=None)
        second = db.reconcile_staged_row(staged_id, category_id=None, period_id=None)

        entries = db.list_ledger_entries(CHAPTER_ID)
        assert first == "inserted"
        assert second == "unchanged"
        assert len(entries) == 1
        assert entries[0].amount_cents == -1250
        assert entries[0].staged_transaction_id == staged_id

    def test_reconcile_row_skips_existing_dedup_key(self, db: DB) -> None:
        row = staged_row()
        _, staged_id = db.upsert_staged_transaction(row, reset_status=False)
        with db.session() as session:
            session.add(
                LedgerEntry(
                    chapter_id=CHAPTER_ID,
                    amount_cents=-1250,
                    description="Entered by hand",
                    transaction_date=date(2025, 1, 15),
                    source="MANUAL",
                    dedup_key=row["hash"],
                )
            )

        action = db.reconcile_staged_row(staged_id, category_id=None, period_id=None)

        staged = db.get_staged_transaction(
            chapter_id=CHAPTER_ID, source="PLAID", external_id="txn_1"
        )
        assert action == "skipped"
        assert staged is not None
        assert staged.status == STAGING_SKIPPED
        assert len(db.list_ledger_entries(CHAPTER_ID)) == 1

    def test_resolve_category_uses_highest_priority_match(self, db: DB) -> None:
        food_id = db.add_budget_category(chapter_id=CHAPTER_ID, name="Food")
        db.add_budget_category(chapter_id=CHAPTER_ID, name="Social")
        db.add_category_rule(merchant_pattern="coffee", category="Social", priority=1)
        db.add_category_rule(
            merchant_pattern="^campus", category="Food", priority=5, source="PLAID"
        )

        category_id = db.resolve_category_id(
            chapter_id=CHAPTER_ID, source="PLAID", description="Campus Coffee"
        )

        assert category_id == food_id

    def test_resolve_category_falls_back_to_uncategorized(self, db: DB) -> None:
        fallback_id = db.add_budget_category(
            chapter_id=CHAPTER_ID, name="Uncategorized"
        )
        db.add_category_rule(merchant_pattern="pizza", category="Food")

        category_id = db.resolve_category_id(
            chapter_id=CHAPTER_ID, source="PLAID", description="Campus Coffee"
        )

        assert category_id == fallback_id

    def test_resolve_category_ignores_other_chapter_rules(self, db: DB) -> None:
        db.add_budget_category(chapter_id=CHAPTER_ID, name="Food")
        db.add_category_rule(
            merchant_pattern="coffee", category="Food", chapter_id=OTHER_CHAPTER_ID
        )

        category_id = db.resolve_category_id(
            chapter_id=CHAPTER_ID, source="PLAID", description="Campus Coffee"
        )

        assert category_id is None

    def test_resolve_category_skips_invalid_patterns(self, db: DB) -> None:
        food_id = db.add_budget_category(chapter_id=CHAPTER_ID, name="Food")
        db.add_category_rule(merchant_pattern="([", category="Food", priority=9)
        db.add_category_rule(merchant_pattern="coffee", category="Food")

        category_id = db.resolve_category_id(
            chapter_id=CHAPTER_ID, source="PLAID", description="Campus Coffee"
        )

        assert category_id == food_id

    def test_current_period_prefers_flagged_period(self, db: DB) -> None:
        current_id = db.add_budget_period(
            chapter_id=CHAPTER_ID,
            name="Fall",
            start_date=date(2024, 9, 1),
            is_current=True,
        )
        db.add_budget_period(
            chapter_id=CHAPTER_ID, name="Spring", start_date=date(2025, 1, 1)
        )

        assert db.get_current_period_id(CHAPTER_ID) == current_id
        assert db.get_current_period_id(OTHER_CHAPTER_ID) is None
