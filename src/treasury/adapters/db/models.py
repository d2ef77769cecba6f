from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal
import uuid

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

StagingStatus = Literal["new", "processed", "skipped"]
SyncStatus = Literal["running", "completed", "failed"]

STAGING_NEW: StagingStatus = "new"
STAGING_PROCESSED: StagingStatus = "processed"
STAGING_SKIPPED: StagingStatus = "skipped"

SYNC_RUNNING: SyncStatus = "running"
SYNC_COMPLETED: SyncStatus = "completed"
SYNC_FAILED: SyncStatus = "failed"

SOURCE_PLAID = "PLAID"


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class UserProfile(Base):
    """Chapter membership for an authenticated user."""

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    chapter_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class BankConnection(Base):
    """A linked bank item and the credential needed to sync it."""

    __tablename__ = "bank_connections"
    __table_args__ = (
        Index("idx_bank_connections_chapter", "chapter_id"),
        Index("idx_bank_connections_item", "item_id"),
    )

    connection_id: Mapped[str] = mapped_column(
        String, primary_key=True, default=_new_id
    )
    chapter_id: Mapped[str] = mapped_column(String, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[str] = mapped_column(String, nullable=False)
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE"), default=True
    )
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )

    # Relationships
    accounts: Mapped[list[BankAccount]] = relationship(
        "BankAccount", back_populates="connection"
    )
    sync_history: Mapped[list[SyncHistoryRecord]] = relationship(
        "SyncHistoryRecord", back_populates="connection"
    )

    def __repr__(self) -> str:
        # Keep the credential out of reprs and log lines.
        return (
            f"BankConnection(connection_id={self.connection_id!r}, "
            f"chapter_id={self.chapter_id!r}, item_id={self.item_id!r}, "
            f"is_active={self.is_active!r})"
        )


class BankAccount(Base):
    """An account under a bank connection, with its last known balances."""

    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "account_id", name="uq_bank_accounts_connection_account"
        ),
    )

    bank_account_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    connection_id: Mapped[str] = mapped_column(
        String, ForeignKey("bank_connections.connection_id"), nullable=False
    )
    chapter_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    official_name: Mapped[str | None] = mapped_column(String, nullable=True)
    mask: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    current_balance_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    available_balance_cents: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    iso_currency_code: Mapped[str] = mapped_column(
        String, nullable=False, default="USD"
    )
    last_balance_update: Mapped[datetime | None] = mapped_column(
        TIMESTAMP, nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Relationships
    connection: Mapped[BankConnection] = relationship(
        "BankConnection", back_populates="accounts"
    )


class StagedTransaction(Base):
    """Durable queue row between sync and reconciliation."""

    __tablename__ = "staged_transactions"
    __table_args__ = (
        UniqueConstraint(
            "chapter_id",
            "source",
            "external_id",
            name="uq_staged_transactions_chapter_source_external",
        ),
        CheckConstraint(
            "status IN ('new', 'processed', 'skipped')",
            name="ck_staged_transactions_status",
        ),
        Index("idx_staged_transactions_hash", "hash"),
        Index("idx_staged_transactions_status", "chapter_id", "source", "status"),
    )

    staged_transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    chapter_id: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    connection_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("bank_connections.connection_id"), nullable=True
    )
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    hash: Mapped[str] = mapped_column(String, nullable=False)
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[str | None] = mapped_column(
        Text, nullable=True
    )  # JSON object stored as TEXT
    status: Mapped[str] = mapped_column(String, nullable=False, default=STAGING_NEW)
    ingested_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )
    processed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)


class SyncHistoryRecord(Base):
    """Audit row for one sync attempt against one connection."""

    __tablename__ = "sync_history"
    __table_args__ = (
        CheckConstraint(
            "sync_status IN ('running', 'completed', 'failed')",
            name="ck_sync_history_status",
        ),
        Index("idx_sync_history_connection", "connection_id"),
        Index("idx_sync_history_chapter_started", "chapter_id", "started_at"),
    )

    sync_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(
        String, ForeignKey("bank_connections.connection_id"), nullable=False
    )
    chapter_id: Mapped[str] = mapped_column(String, nullable=False)
    cursor_before: Mapped[str | None] = mapped_column(Text, nullable=True)
    cursor_after: Mapped[str | None] = mapped_column(Text, nullable=True)
    transactions_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transactions_modified: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    transactions_removed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    accounts_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pages_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sync_status: Mapped[str] = mapped_column(
        String, nullable=False, default=SYNC_RUNNING
    )
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    # Relationships
    connection: Mapped[BankConnection] = relationship(
        "BankConnection", back_populates="sync_history"
    )


class BudgetCategory(Base):
    """Chapter budget category (owned by the budgeting screens)."""

    __tablename__ = "budget_categories"

    category_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    chapter_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class BudgetPeriod(Base):
    """Chapter budget period (owned by the budgeting screens)."""

    __tablename__ = "budget_periods"

    period_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    chapter_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CategoryRule(Base):
    """Description pattern mapping transactions to a budget category name."""

    __tablename__ = "category_rules"

    rule_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str | None] = mapped_column(
        String, nullable=True
    )  # NULL applies to every chapter
    source: Mapped[str] = mapped_column(String, nullable=False)  # "PLAID" | "ALL"
    merchant_pattern: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )


class LedgerEntry(Base):
    """Authoritative ledger row; at most one per chapter and dedup key."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("chapter_id", "dedup_key", name="uq_ledger_chapter_dedup"),
    )

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    category_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("budget_categories.category_id"), nullable=True
    )
    period_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("budget_periods.period_id"), nullable=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    dedup_key: Mapped[str] = mapped_column(String, nullable=False)
    staged_transaction_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("staged_transactions.staged_transaction_id"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )


class ReconciliationRun(Base):
    """Audit row for one reconcile call."""

    __tablename__ = "reconciliation_runs"

    run_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_inserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_errored: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_details: Mapped[str | None] = mapped_column(
        Text, nullable=True
    )  # JSON array stored as TEXT
    status: Mapped[str] = mapped_column(String, nullable=False, default=SYNC_RUNNING)
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, default=datetime.now
    )
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)


@dataclass
class ConnectionView:
    """Public projection of a BankConnection; never carries the credential."""

    connection_id: str
    chapter_id: str
    institution_id: str | None
    institution_name: str | None
    item_id: str
    last_synced_at: datetime | None
    is_active: bool
    error_code: str | None
    error_message: str | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, connection: BankConnection) -> ConnectionView:
        return cls(
            connection_id=connection.connection_id,
            chapter_id=connection.chapter_id,
            institution_id=connection.institution_id,
            institution_name=connection.institution_name,
            item_id=connection.item_id,
            last_synced_at=connection.last_synced_at,
            is_active=connection.is_active,
            error_code=connection.error_code,
            error_message=connection.error_message,
            created_at=connection.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "institution_id": self.institution_id,
            "institution_name": self.institution_name,
            "last_synced_at": _isoformat(self.last_synced_at),
            "is_active": self.is_active,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class StageRowOutcome:
    external_id: str
    action: str  # "inserted" | "updated" | "unchanged"
    staged_transaction_id: int | None = None


@dataclass
class StageOutcome:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    rows: list[StageRowOutcome] = field(default_factory=list)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def history_to_dict(record: SyncHistoryRecord) -> dict[str, Any]:
    """Serialize a sync history row for API responses."""
    return {
        "sync_id": record.sync_id,
        "connection_id": record.connection_id,
        "cursor_before": record.cursor_before,
        "cursor_after": record.cursor_after,
        "added": record.transactions_added,
        "modified": record.transactions_modified,
        "removed": record.transactions_removed,
        "accounts_updated": record.accounts_updated,
        "pages_fetched": record.pages_fetched,
        "sync_status": record.sync_status,
        "error_code": record.error_code,
        "error_message": record.error_message,
        "started_at": _isoformat(record.started_at),
        "completed_at": _isoformat(record.completed_at),
    }
