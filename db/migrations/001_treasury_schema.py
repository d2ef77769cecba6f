"""Treasury sync and reconciliation schema

Revision ID: 001_treasury_schema
Revises:
Create Date: 2026-10-17

Creates connection, account, staging, sync history and reconciliation
tables, plus the budget tables the reconciler reads from. The two unique
constraints (staging key and ledger dedup key) are what make replayed
syncs and repeated reconciles safe.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_treasury_schema"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.TIMESTAMP(), nullable=True)
    return sa.Column(
        name,
        sa.TIMESTAMP(),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    """Create the treasury tables."""
    op.create_table(
        "user_profiles",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_user_profiles_chapter_id", "user_profiles", ["chapter_id"])

    op.create_table(
        "bank_connections",
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("institution_id", sa.String(), nullable=True),
        sa.Column("institution_name", sa.String(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=True),
        _timestamp("last_synced_at", nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")
        ),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("connection_id"),
    )
    op.create_index("idx_bank_connections_chapter", "bank_connections", ["chapter_id"])
    op.create_index("idx_bank_connections_item", "bank_connections", ["item_id"])

    op.create_table(
        "bank_accounts",
        sa.Column("bank_account_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("official_name", sa.String(), nullable=True),
        sa.Column("mask", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=True),
        sa.Column("subtype", sa.String(), nullable=True),
        sa.Column("current_balance_cents", sa.Integer(), nullable=True),
        sa.Column("available_balance_cents", sa.Integer(), nullable=True),
        sa.Column(
            "iso_currency_code",
            sa.String(),
            nullable=False,
            server_default=sa.text("'USD'"),
        ),
        _timestamp("last_balance_update", nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")
        ),
        sa.PrimaryKeyConstraint("bank_account_id"),
        sa.ForeignKeyConstraint(
            ["connection_id"],
            ["bank_connections.connection_id"],
        ),
        sa.UniqueConstraint(
            "connection_id", "account_id", name="uq_bank_accounts_connection_account"
        ),
    )
    op.create_index("ix_bank_accounts_chapter_id", "bank_accounts", ["chapter_id"])

    op.create_table(
        "staged_transactions",
        sa.Column(
            "staged_transaction_id", sa.Integer(), autoincrement=True, nullable=False
        ),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("hash", sa.String(), nullable=False),
        sa.Column("posted_at", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("raw_data", sa.Text(), nullable=True),
        sa.Column(
            "status", sa.String(), nullable=False, server_default=sa.text("'new'")
        ),
        _timestamp("ingested_at"),
        _timestamp("processed_at", nullable=True),
        sa.PrimaryKeyConstraint("staged_transaction_id"),
        sa.ForeignKeyConstraint(
            ["connection_id"],
            ["bank_connections.connection_id"],
        ),
        sa.UniqueConstraint(
            "chapter_id",
            "source",
            "external_id",
            name="uq_staged_transactions_chapter_source_external",
        ),
        sa.CheckConstraint(
            "status IN ('new', 'processed', 'skipped')",
            name="ck_staged_transactions_status",
        ),
    )
    op.create_index("idx_staged_transactions_hash", "staged_transactions", ["hash"])
    op.create_index(
        "idx_staged_transactions_status",
        "staged_transactions",
        ["chapter_id", "source", "status"],
    )

    op.create_table(
        "sync_history",
        sa.Column("sync_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("cursor_before", sa.Text(), nullable=True),
        sa.Column("cursor_after", sa.Text(), nullable=True),
        sa.Column(
            "transactions_added", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "transactions_modified", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "transactions_removed", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("accounts_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "sync_status",
            sa.String(),
            nullable=False,
            server_default=sa.text("'running'"),
        ),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("started_at"),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("sync_id"),
        sa.ForeignKeyConstraint(
            ["connection_id"],
            ["bank_connections.connection_id"],
        ),
        sa.CheckConstraint(
            "sync_status IN ('running', 'completed', 'failed')",
            name="ck_sync_history_status",
        ),
    )
    op.create_index("idx_sync_history_connection", "sync_history", ["connection_id"])
    op.create_index(
        "idx_sync_history_chapter_started",
        "sync_history",
        ["chapter_id", "started_at"],
    )

    op.create_table(
        "budget_categories",
        sa.Column("category_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")
        ),
        sa.PrimaryKeyConstraint("category_id"),
    )
    op.create_index(
        "ix_budget_categories_chapter_id", "budget_categories", ["chapter_id"]
    )

    op.create_table(
        "budget_periods",
        sa.Column("period_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column(
            "is_current", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")
        ),
        sa.PrimaryKeyConstraint("period_id"),
    )
    op.create_index("ix_budget_periods_chapter_id", "budget_periods", ["chapter_id"])

    op.create_table(
        "category_rules",
        sa.Column("rule_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("merchant_pattern", sa.Text(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")
        ),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("rule_id"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("period_id", sa.Integer(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("dedup_key", sa.String(), nullable=False),
        sa.Column("staged_transaction_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.ForeignKeyConstraint(
            ["category_id"],
            ["budget_categories.category_id"],
        ),
        sa.ForeignKeyConstraint(
            ["period_id"],
            ["budget_periods.period_id"],
        ),
        sa.ForeignKeyConstraint(
            ["staged_transaction_id"],
            ["staged_transactions.staged_transaction_id"],
        ),
        sa.UniqueConstraint("chapter_id", "dedup_key", name="uq_ledger_chapter_dedup"),
    )
    op.create_index("ix_ledger_entries_chapter_id", "ledger_entries", ["chapter_id"])

    op.create_table(
        "reconciliation_runs",
        sa.Column("run_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chapter_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column(
            "records_processed", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("records_inserted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_errored", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column(
            "status", sa.String(), nullable=False, server_default=sa.text("'running'")
        ),
        _timestamp("started_at"),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "ix_reconciliation_runs_chapter_id", "reconciliation_runs", ["chapter_id"]
    )


def downgrade() -> None:
    """Drop the treasury tables."""
    op.drop_table("reconciliation_runs")
    op.drop_table("ledger_entries")
    op.drop_table("category_rules")
    op.drop_table("budget_periods")
    op.drop_table("budget_categories")
    op.drop_table("sync_history")
    op.drop_table("staged_transactions")
    op.drop_table("bank_accounts")
    op.drop_table("bank_connections")
    op.drop_table("user_profiles")
