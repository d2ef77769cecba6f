from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
import json
import re
from typing import Any, Literal

from sqlalchemy import create_engine, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from treasury.adapters.db.models import (
    STAGING_NEW,
    STAGING_PROCESSED,
    STAGING_SKIPPED,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_RUNNING,
    BankAccount,
    BankConnection,
    Base,
    BudgetCategory,
    BudgetPeriod,
    CategoryRule,
    LedgerEntry,
    ReconciliationRun,
    StagedTransaction,
    SyncHistoryRecord,
    UserProfile,
)
from treasury.core.errors import ConflictError, NotFoundError

UNCATEGORIZED = "Uncategorized"

StageAction = Literal["inserted", "updated", "unchanged"]
ReconcileAction = Literal["inserted", "skipped", "unchanged"]


class DB:
    """Database service layer for connections, staging, history and ledger."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///treasury.db")
        """
        self._url = url
        engine_kwargs: dict[str, Any] = {"echo": False}
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection so worker threads see the same database.
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self._engine = create_engine(url, **engine_kwargs)
        self._session_factory = sessionmaker(
            bind=self._engine, class_=Session, expire_on_commit=False
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # Identity ------------------------------------------------------------

    def get_user_profile(self, user_id: str) -> UserProfile | None:
        """Return the chapter membership for a user, if any."""
        with self.session() as session:  # type: Session
            profile = session.get(UserProfile, user_id)
            if profile:
                session.expunge(profile)
            return profile

    def save_user_profile(
        self, *, user_id: str, chapter_id: str, full_name: str | None = None
    ) -> UserProfile:
        """Insert or update a user's chapter membership."""
        with self.session() as session:  # type: Session
            profile = session.get(UserProfile, user_id)
            if profile is None:
                profile = UserProfile(
                    user_id=user_id, chapter_id=chapter_id, full_name=full_name
                )
                session.add(profile)
            else:
                profile.chapter_id = chapter_id
                if full_name is not None:
                    profile.full_name = full_name
            session.flush()
            session.expunge(profile)
            return profile

    # Connection store ----------------------------------------------------

    def create_connection(
        self,
        *,
        chapter_id: str,
        item_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
        created_by: str | None = None,
    ) -> BankConnection:
        """Create a bank connection for a chapter.

        Raises:
            ConflictError: If the item is already linked and active
        """
        with self.session() as session:  # type: Session
            existing = (
                session.query(BankConnection)
                .filter(
                    BankConnection.item_id == item_id,
                    BankConnection.is_active.is_(True),
                )
                .first()
            )
            if existing is not None:
                raise ConflictError(
                    f"Bank item {item_id} is already linked "
                    f"(connection {existing.connection_id})"
                )

            now = datetime.now()
            connection = BankConnection(
                chapter_id=chapter_id,
                item_id=item_id,
                access_token=access_token,
                institution_id=institution_id,
                institution_name=institution_name,
                created_by=created_by,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            session.add(connection)
            session.flush()
            session.expunge(connection)
            return connection

    def get_connection(self, connection_id: str, chapter_id: str) -> BankConnection:
        """Load a connection owned by the given chapter.

        Raises:
            NotFoundError: If it does not exist or belongs to another chapter
        """
        with self.session() as session:  # type: Session
            connection = (
                session.query(BankConnection)
                .filter(
                    BankConnection.connection_id == connection_id,
                    BankConnection.chapter_id == chapter_id,
                )
                .first()
            )
            if connection is None:
                raise NotFoundError(f"Connection {connection_id} not found")
            session.expunge(connection)
            return connection

    def get_active_connections(self, chapter_id: str) -> list[BankConnection]:
        """List the chapter's active connections, oldest first."""
        with self.session() as session:  # type: Session
            connections = (
                session.query(BankConnection)
                .filter(
                    BankConnection.chapter_id == chapter_id,
                    BankConnection.is_active.is_(True),
                )
                .order_by(BankConnection.created_at)
                .all()
            )
            for connection in connections:
                session.expunge(connection)
            return connections

    def list_connections(self, chapter_id: str) -> list[BankConnection]:
        """List every connection of a chapter, newest first."""
        with self.session() as session:  # type: Session
            connections = (
                session.query(BankConnection)
                .filter(BankConnection.chapter_id == chapter_id)
                .order_by(BankConnection.created_at.desc())
                .all()
            )
            for connection in connections:
                session.expunge(connection)
            return connections

    def update_cursor(
        self,
        connection_id: str,
        cursor: str | None,
        last_synced_at: datetime,
    ) -> None:
        """Persist the sync cursor and sync time in one write."""
        with self.session() as session:  # type: Session
            updated = (
                session.query(BankConnection)
                .filter(BankConnection.connection_id == connection_id)
                .update(
                    {
                        "cursor": cursor,
                        "last_synced_at": last_synced_at,
                        "updated_at": datetime.now(),
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                raise NotFoundError(f"Connection {connection_id} not found")

    def mark_error(self, connection_id: str, code: str | None, message: str) -> None:
        """Annotate a connection with an aggregator problem."""
        with self.session() as session:  # type: Session
            session.query(BankConnection).filter(
                BankConnection.connection_id == connection_id
            ).update(
                {
                    "error_code": code,
                    "error_message": message,
                    "updated_at": datetime.now(),
                },
                synchronize_session=False,
            )

    def clear_error(self, connection_id: str) -> None:
        """Remove any error annotation from a connection."""
        with self.session() as session:  # type: Session
            session.query(BankConnection).filter(
                BankConnection.connection_id == connection_id,
                or_(
                    BankConnection.error_code.is_not(None),
                    BankConnection.error_message.is_not(None),
                ),
            ).update(
                {
                    "error_code": None,
                    "error_message": None,
                    "updated_at": datetime.now(),
                },
                synchronize_session=False,
            )

    def deactivate_connection(self, connection_id: str, chapter_id: str) -> None:
        """Soft-disable a connection and its accounts.

        Raises:
            NotFoundError: If it does not exist or belongs to another chapter
        """
        with self.session() as session:  # type: Session
            connection = (
                session.query(BankConnection)
                .filter(
                    BankConnection.connection_id == connection_id,
                    BankConnection.chapter_id == chapter_id,
                )
                .first()
            )
            if connection is None:
                raise NotFoundError(f"Connection {connection_id} not found")
            connection.is_active = False
            connection.updated_at = datetime.now()
            session.query(BankAccount).filter(
                BankAccount.connection_id == connection_id
            ).update({"is_active": False}, synchronize_session=False)

    # Accounts ------------------------------------------------------------

    def save_accounts(
        self,
        *,
        connection_id: str,
        chapter_id: str,
        accounts: Iterable[dict[str, Any]],
    ) -> int:
        """Insert or refresh account rows and balances for a connection.

        Args:
            connection_id: Owning connection
            chapter_id: Owning chapter
            accounts: Account dicts as returned by the aggregator client

        Returns:
            Number of account rows written
        """
        now = datetime.now()
        written = 0
        with self.session() as session:  # type: Session
            for data in accounts:
                account = (
                    session.query(BankAccount)
                    .filter(
                        BankAccount.connection_id == connection_id,
                        BankAccount.account_id == data["account_id"],
                    )
                    .first()
                )
                if account is None:
                    account = BankAccount(
                        connection_id=connection_id,
                        chapter_id=chapter_id,
                        account_id=data["account_id"],
                    )
                    session.add(account)
                account.name = data.get("name")
                account.official_name = data.get("official_name")
                account.mask = data.get("mask")
                account.type = data.get("type")
                account.subtype = data.get("subtype")
                account.current_balance_cents = data.get("current_balance_cents")
                account.available_balance_cents = data.get("available_balance_cents")
                account.iso_currency_code = data.get("iso_currency_code") or "USD"
                account.last_balance_update = now
                account.is_active = True
                written += 1
        return written

    def list_accounts(self, connection_id: str) -> list[BankAccount]:
        """List active accounts for a connection."""
        with self.session() as session:  # type: Session
            accounts = (
                session.query(BankAccount)
                .filter(
                    BankAccount.connection_id == connection_id,
                    BankAccount.is_active.is_(True),
                )
                .order_by(BankAccount.name)
                .all()
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    # Staging -------------------------------------------------------------

    def get_staged_transaction(
        self,
        *,
        chapter_id: str,
        source: str,
        external_id: str,
    ) -> StagedTransaction | None:
        """Get a staged row by its composite identity."""
        with self.session() as session:  # type: Session
            row = (
                session.query(StagedTransaction)
                .filter(
                    StagedTransaction.chapter_id == chapter_id,
                    StagedTransaction.source == source,
                    StagedTransaction.external_id == external_id,
                )
                .first()
            )
            if row:
                session.expunge(row)
            return row

    def list_staged_transactions(
        self,
        chapter_id: str,
        *,
        source: str | None = None,
        status: str | None = None,
    ) -> list[StagedTransaction]:
        """List staged rows for a chapter, oldest first."""
        with self.session() as session:  # type: Session
            query = session.query(StagedTransaction).filter(
                StagedTransaction.chapter_id == chapter_id
            )
            if source is not None:
                query = query.filter(StagedTransaction.source == source)
            if status is not None:
                query = query.filter(StagedTransaction.status == status)
            rows = query.order_by(
                StagedTransaction.ingested_at,
                StagedTransaction.staged_transaction_id,
            ).all()
            for row in rows:
                session.expunge(row)
            return rows

    def upsert_staged_transaction(
        self,
        data: dict[str, Any],
        *,
        reset_status: bool,
    ) -> tuple[StageAction, int]:
        """Write a staged row keyed on (chapter_id, source, external_id).

        A missing row is inserted with status new. An existing row is
        rewritten and reset to new when ``reset_status`` is set. Otherwise
        only a row still waiting for reconciliation is refreshed; processed
        and skipped rows are left untouched.

        Args:
            data: Column values; must include chapter_id, source, external_id,
                hash, posted_at and amount_cents
            reset_status: True for aggregator "modified" signals

        Returns:
            Tuple of (action taken, staged_transaction_id)
        """
        try:
            return self._upsert_staged(data, reset_status=reset_status)
        except IntegrityError:
            # A concurrent writer inserted the same key first; retry as update.
            return self._upsert_staged(data, reset_status=reset_status)

    def _upsert_staged(
        self,
        data: dict[str, Any],
        *,
        reset_status: bool,
    ) -> tuple[StageAction, int]:
        with self.session() as session:  # type: Session
            row = (
                session.query(StagedTransaction)
                .filter(
                    StagedTransaction.chapter_id == data["chapter_id"],
                    StagedTransaction.source == data["source"],
                    StagedTransaction.external_id == data["external_id"],
                )
                .first()
            )
            if row is None:
                row = StagedTransaction(**data, status=STAGING_NEW)
                session.add(row)
                session.flush()
                return "inserted", row.staged_transaction_id

            if not reset_status and (
                row.status != STAGING_NEW or row.hash == data["hash"]
            ):
                return "unchanged", row.staged_transaction_id

            for key, value in data.items():
                if key not in ("chapter_id", "source", "external_id"):
                    setattr(row, key, value)
            row.status = STAGING_NEW
            row.processed_at = None
            session.flush()
            return "updated", row.staged_transaction_id

    # Sync history --------------------------------------------------------

    def start_sync_history(
        self,
        *,
        connection_id: str,
        chapter_id: str,
        cursor_before: str | None,
    ) -> SyncHistoryRecord:
        """Open a sync history record in status running."""
        with self.session() as session:  # type: Session
            record = SyncHistoryRecord(
                connection_id=connection_id,
                chapter_id=chapter_id,
                cursor_before=cursor_before,
                sync_status=SYNC_RUNNING,
                started_at=datetime.now(),
            )
            session.add(record)
            session.flush()
            session.expunge(record)
            return record

    def complete_sync_history(
        self,
        sync_id: int,
        *,
        added: int,
        modified: int,
        removed: int,
        cursor_after: str | None,
        accounts_updated: int = 0,
        pages_fetched: int = 0,
    ) -> SyncHistoryRecord:
        """Finalize a running sync record as completed."""
        with self.session() as session:  # type: Session
            record = self._complete_history(
                session,
                sync_id,
                added=added,
                modified=modified,
                removed=removed,
                cursor_after=cursor_after,
                accounts_updated=accounts_updated,
                pages_fetched=pages_fetched,
            )
            session.expunge(record)
            return record

    def finish_sync(
        self,
        sync_id: int,
        *,
        connection_id: str,
        cursor_after: str,
        synced_at: datetime,
        added: int,
        modified: int,
        removed: int,
        accounts_updated: int = 0,
        pages_fetched: int = 0,
    ) -> SyncHistoryRecord:
        """Commit a successful sync in one transaction.

        Advances the connection cursor, clears its error annotation and
        completes the history record together. If any part fails nothing is
        written, so the cursor never moves past a record left running.

        Raises:
            NotFoundError: If the connection or history record is missing
            ConflictError: If the history record was already finalized
        """
        with self.session() as session:  # type: Session
            updated = (
                session.query(BankConnection)
                .filter(BankConnection.connection_id == connection_id)
                .update(
                    {
                        "cursor": cursor_after,
                        "last_synced_at": synced_at,
                        "error_code": None,
                        "error_message": None,
                        "updated_at": datetime.now(),
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                raise NotFoundError(f"Connection {connection_id} not found")
            record = self._complete_history(
                session,
                sync_id,
                added=added,
                modified=modified,
                removed=removed,
                cursor_after=cursor_after,
                accounts_updated=accounts_updated,
                pages_fetched=pages_fetched,
            )
            session.expunge(record)
            return record

    def _complete_history(
        self,
        session: Session,
        sync_id: int,
        *,
        added: int,
        modified: int,
        removed: int,
        cursor_after: str | None,
        accounts_updated: int,
        pages_fetched: int,
    ) -> SyncHistoryRecord:
        record = self._running_history(session, sync_id)
        record.transactions_added = added
        record.transactions_modified = modified
        record.transactions_removed = removed
        record.accounts_updated = accounts_updated
        record.pages_fetched = pages_fetched
        record.cursor_after = cursor_after
        record.sync_status = SYNC_COMPLETED
        record.completed_at = datetime.now()
        session.flush()
        return record

    def fail_sync_history(
        self,
        sync_id: int,
        *,
        error_message: str,
        error_code: str | None = None,
        added: int = 0,
        modified: int = 0,
        removed: int = 0,
    ) -> SyncHistoryRecord:
        """Finalize a running sync record as failed."""
        with self.session() as session:  # type: Session
            record = self._running_history(session, sync_id)
            record.transactions_added = added
            record.transactions_modified = modified
            record.transactions_removed = removed
            record.sync_status = SYNC_FAILED
            record.error_code = error_code
            record.error_message = error_message
            record.completed_at = datetime.now()
            session.flush()
            session.expunge(record)
            return record

    @staticmethod
    def _running_history(session: Session, sync_id: int) -> SyncHistoryRecord:
        record = session.get(SyncHistoryRecord, sync_id)
        if record is None:
            raise NotFoundError(f"Sync history record {sync_id} not found")
        if record.sync_status != SYNC_RUNNING:
            raise ConflictError(
                f"Sync history record {sync_id} is already {record.sync_status}"
            )
        return record

    def list_sync_history(
        self,
        chapter_id: str,
        *,
        connection_id: str | None = None,
        limit: int = 20,
    ) -> list[SyncHistoryRecord]:
        """List recent sync attempts for a chapter, newest first."""
        with self.session() as session:  # type: Session
            query = session.query(SyncHistoryRecord).filter(
                SyncHistoryRecord.chapter_id == chapter_id
            )
            if connection_id is not None:
                query = query.filter(SyncHistoryRecord.connection_id == connection_id)
            records = (
                query.order_by(
                    SyncHistoryRecord.started_at.desc(),
                    SyncHistoryRecord.sync_id.desc(),
                )
                .limit(limit)
                .all()
            )
            for record in records:
                session.expunge(record)
            return records

    # Ledger & reconciliation ---------------------------------------------

    def resolve_category_id(
        self,
        *,
        chapter_id: str,
        source: str,
        description: str | None,
    ) -> int | None:
        """Pick a budget category for a transaction description.

        Rules are tried by priority (highest first, newest first on ties);
        rule patterns are case-insensitive regular expressions. Falls back
        to the chapter's "Uncategorized" category, then to None.
        """
        with self.session() as session:  # type: Session
            rules = (
                session.query(CategoryRule)
                .filter(
                    CategoryRule.is_active.is_(True),
                    CategoryRule.source.in_([source, "ALL"]),
                    or_(
                        CategoryRule.chapter_id.is_(None),
                        CategoryRule.chapter_id == chapter_id,
                    ),
                )
                .order_by(CategoryRule.priority.desc(), CategoryRule.created_at.desc())
                .all()
            )
            for rule in rules:
                try:
                    matched = re.search(
                        rule.merchant_pattern, description or "", re.IGNORECASE
                    )
                except re.error:
                    continue
                if matched:
                    category_id = self._active_category_id(
                        session, chapter_id, rule.category
                    )
                    if category_id is not None:
                        return category_id
            return self._active_category_id(session, chapter_id, UNCATEGORIZED)

    @staticmethod
    def _active_category_id(
        session: Session, chapter_id: str, name: str
    ) -> int | None:
        category = (
            session.query(BudgetCategory)
            .filter(
                BudgetCategory.chapter_id == chapter_id,
                BudgetCategory.name == name,
                BudgetCategory.is_active.is_(True),
            )
            .first()
        )
        return category.category_id if category else None

    def get_current_period_id(self, chapter_id: str) -> int | None:
        """Return the chapter's current budget period, else its latest one."""
        with self.session() as session:  # type: Session
            period = (
                session.query(BudgetPeriod)
                .filter(BudgetPeriod.chapter_id == chapter_id)
                .order_by(
                    BudgetPeriod.is_current.desc(), BudgetPeriod.start_date.desc()
                )
                .first()
            )
            return period.period_id if period else None

    def ledger_entry_exists(self, *, chapter_id: str, dedup_key: str) -> bool:
        """Check whether the ledger already holds an entry for a dedup key."""
        with self.session() as session:  # type: Session
            count = (
                session.query(func.count(LedgerEntry.entry_id))
                .filter(
                    LedgerEntry.chapter_id == chapter_id,
                    LedgerEntry.dedup_key == dedup_key,
                )
                .scalar()
            )
            return bool(count)

    def list_ledger_entries(self, chapter_id: str) -> list[LedgerEntry]:
        """List a chapter's ledger entries in insertion order."""
        with self.session() as session:  # type: Session
            entries = (
                session.query(LedgerEntry)
                .filter(LedgerEntry.chapter_id == chapter_id)
                .order_by(LedgerEntry.entry_id)
                .all()
            )
            for entry in entries:
                session.expunge(entry)
            return entries

    def reconcile_staged_row(
        self,
        staged_transaction_id: int,
        *,
        category_id: int | None,
        period_id: int | None,
    ) -> ReconcileAction:
        """Move one staged row into the ledger, at most once per dedup key.

        The row's hash is the ledger dedup key. When an entry with that key
        already exists the row is marked skipped, otherwise a ledger entry is
        inserted and the row marked processed, both in one transaction.

        Returns:
            "inserted", "skipped", or "unchanged" when the row was no
            longer in status new (another reconcile got to it first)
        """
        try:
            return self._reconcile_row(
                staged_transaction_id,
                category_id=category_id,
                period_id=period_id,
            )
        except IntegrityError:
            # Lost the race on the dedup key to a concurrent reconcile.
            with self.session() as session:  # type: Session
                session.query(StagedTransaction).filter(
                    StagedTransaction.staged_transaction_id == staged_transaction_id,
                    StagedTransaction.status == STAGING_NEW,
                ).update(
                    {"status": STAGING_SKIPPED, "processed_at": datetime.now()},
                    synchronize_session=False,
                )
            return "skipped"

    def _reconcile_row(
        self,
        staged_transaction_id: int,
        *,
        category_id: int | None,
        period_id: int | None,
    ) -> ReconcileAction:
        with self.session() as session:  # type: Session
            row = session.get(StagedTransaction, staged_transaction_id)
            if row is None:
                raise NotFoundError(
                    f"Staged transaction {staged_transaction_id} not found"
                )
            if row.status != STAGING_NEW:
                return "unchanged"

            duplicate = (
                session.query(LedgerEntry.entry_id)
                .filter(
                    LedgerEntry.chapter_id == row.chapter_id,
                    LedgerEntry.dedup_key == row.hash,
                )
                .first()
            )
            now = datetime.now()
            if duplicate is not None:
                row.status = STAGING_SKIPPED
                row.processed_at = now
                return "skipped"

            session.add(
                LedgerEntry(
                    chapter_id=row.chapter_id,
                    category_id=category_id,
                    period_id=period_id,
                    amount_cents=row.amount_cents,
                    description=row.description,
                    transaction_date=row.posted_at,
                    source=row.source,
                    dedup_key=row.hash,
                    staged_transaction_id=row.staged_transaction_id,
                    notes=json.dumps({"external_id": row.external_id}),
                    created_at=now,
                )
            )
            session.flush()
            row.status = STAGING_PROCESSED
            row.processed_at = now
            return "inserted"

    def start_reconciliation_run(self, *, chapter_id: str, source: str) -> int:
        """Open a reconciliation audit record and return its id."""
        with self.session() as session:  # type: Session
            run = ReconciliationRun(
                chapter_id=chapter_id,
                source=source,
                status=SYNC_RUNNING,
                started_at=datetime.now(),
            )
            session.add(run)
            session.flush()
            return run.run_id

    def finish_reconciliation_run(
        self,
        run_id: int,
        *,
        processed: int,
        inserted: int,
        skipped: int,
        errored: int,
        error_details: list[dict[str, Any]],
        status: str = SYNC_COMPLETED,
    ) -> None:
        """Record the final counts of a reconciliation run."""
        with self.session() as session:  # type: Session
            run = session.get(ReconciliationRun, run_id)
            if run is None:
                raise NotFoundError(f"Reconciliation run {run_id} not found")
            run.records_processed = processed
            run.records_inserted = inserted
            run.records_skipped = skipped
            run.records_errored = errored
            run.error_details = json.dumps(error_details)
            run.status = status
            run.completed_at = datetime.now()

    def list_reconciliation_runs(self, chapter_id: str) -> list[ReconciliationRun]:
        """List reconciliation runs for a chapter, newest first."""
        with self.session() as session:  # type: Session
            runs = (
                session.query(ReconciliationRun)
                .filter(ReconciliationRun.chapter_id == chapter_id)
                .order_by(ReconciliationRun.run_id.desc())
                .all()
            )
            for run in runs:
                session.expunge(run)
            return runs

    # Budget fixtures -----------------------------------------------------

    def add_budget_category(self, *, chapter_id: str, name: str) -> int:
        """Create a budget category and return its id."""
        with self.session() as session:  # type: Session
            category = BudgetCategory(chapter_id=chapter_id, name=name, is_active=True)
            session.add(category)
            session.flush()
            return category.category_id

    def add_budget_period(
        self,
        *,
        chapter_id: str,
        name: str,
        start_date: date,
        is_current: bool = False,
    ) -> int:
        """Create a budget period and return its id."""
        with self.session() as session:  # type: Session
            period = BudgetPeriod(
                chapter_id=chapter_id,
                name=name,
                start_date=start_date,
                is_current=is_current,
            )
            session.add(period)
            session.flush()
            return period.period_id

    def add_category_rule(
        self,
        *,
        merchant_pattern: str,
        category: str,
        source: str = "ALL",
        priority: int = 0,
        chapter_id: str | None = None,
    ) -> int:
        """Create a categorization rule and return its id."""
        with self.session() as session:  # type: Session
            rule = CategoryRule(
                chapter_id=chapter_id,
                source=source,
                merchant_pattern=merchant_pattern,
                category=category,
                priority=priority,
                is_active=True,
                created_at=datetime.now(),
            )
            session.add(rule)
            session.flush()
            return rule.rule_id
