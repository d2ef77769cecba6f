from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import SOURCE_PLAID, BankConnection
from treasury.core.errors import ConflictError, PersistenceError, UpstreamError
from treasury.infra.clients.plaid import MUTATION_DURING_PAGINATION
from treasury.infra.clients.protocol import (
    AggregatorClient,
    AggregatorTransaction,
    RemovedTransaction,
)
from treasury.tools.sync.staging import StagingWriter

# Item is gone for good on the aggregator side; keep it out of sync_all.
DEACTIVATING_ERROR_CODES = frozenset({"ITEM_NOT_FOUND", "USER_PERMISSION_REVOKED"})

DEFAULT_SYNC_ERROR_CODE = "SYNC_FAILED"


@dataclass
class AccumulatedTransactions:
    """Accumulated transactions from all aggregator sync pages."""

    added: list[AggregatorTransaction]
    modified: list[AggregatorTransaction]
    removed: list[RemovedTransaction]
    final_cursor: str
    pages_fetched: int
    has_more: bool


@dataclass
class SyncOutcome:
    """Result of one completed sync attempt."""

    connection_id: str
    sync_id: int
    added: int
    modified: int
    removed: int
    accounts_updated: int
    pages_fetched: int
    next_cursor: str
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "sync_id": self.sync_id,
            "added": self.added,
            "modified": self.modified,
            "removed": self.removed,
            "accounts_updated": self.accounts_updated,
            "pages_fetched": self.pages_fetched,
            "has_more": self.has_more,
        }


class SyncToolLogger:
    """Handles all logging for SyncTool with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, connection_id: str, cursor: str | None) -> None:
        """Log start of a sync attempt."""
        self._logger.bind(
            connection_id=connection_id, cursor=cursor or "initial"
        ).info("Starting sync for connection {}", connection_id)

    def fetch_start(self, cursor: str) -> None:
        """Log start of page fetch from the aggregator."""
        cursor_label = cursor or "initial"
        self._logger.bind(cursor=cursor_label).debug(
            "Fetching transactions (cursor: {})", cursor_label
        )

    def fetch_complete(
        self, added_count: int, modified_count: int, removed_count: int, page_num: int
    ) -> None:
        """Log completion of page fetch."""
        self._logger.bind(
            added=added_count,
            modified=modified_count,
            removed=removed_count,
            page=page_num,
        ).info(
            "Fetch complete: {} added, {} modified, {} removed (page {})",
            added_count,
            modified_count,
            removed_count,
            page_num,
        )

    def page_limit_reached(self, max_pages: int) -> None:
        """Log that more pages remain for a later call."""
        self._logger.bind(max_pages=max_pages).warning(
            "Stopped after {} pages with more changes pending", max_pages
        )

    def mutation_retry(self, attempt: int, max_retries: int) -> None:
        """Log mutation error retry attempt."""
        self._logger.bind(attempt=attempt, max_retries=max_retries).warning(
            "Mutation detected, restarting fetch (attempt {}/{})",
            attempt,
            max_retries,
        )

    def staging_complete(self, inserted: int, modified: int, unchanged: int) -> None:
        """Log results of staging writes."""
        self._logger.bind(
            inserted=inserted, modified=modified, unchanged=unchanged
        ).info(
            "Staged {} new and {} modified transactions ({} already staged)",
            inserted,
            modified,
            unchanged,
        )

    def balances_failed(self, connection_id: str, error: Exception) -> None:
        """Log a failed balance refresh (non-fatal)."""
        self._logger.bind(connection_id=connection_id).warning(
            "Balance refresh failed for connection {}: {}", connection_id, error
        )

    def sync_complete(self, outcome: SyncOutcome) -> None:
        """Log a completed sync."""
        self._logger.bind(
            connection_id=outcome.connection_id,
            sync_id=outcome.sync_id,
            added=outcome.added,
            modified=outcome.modified,
            removed=outcome.removed,
        ).info(
            "Sync {} completed for connection {}: {} added, {} modified, {} removed",
            outcome.sync_id,
            outcome.connection_id,
            outcome.added,
            outcome.modified,
            outcome.removed,
        )

    def sync_failed(self, connection_id: str, sync_id: int, error: Exception) -> None:
        """Log a failed sync attempt."""
        self._logger.bind(connection_id=connection_id, sync_id=sync_id).error(
            "Sync {} failed for connection {}: {}", sync_id, connection_id, error
        )

    def history_write_failed(self, sync_id: int, error: Exception) -> None:
        """Log failure to finalize a history record after a failed sync."""
        self._logger.bind(sync_id=sync_id).error(
            "Could not record failure of sync {}: {}", sync_id, error
        )


class SyncTool:
    """
    Drives one bank connection through an incremental sync cycle.

    Loads the connection, fetches changes since its stored cursor, stages
    them, advances the cursor and records the attempt in sync history. A
    failed attempt leaves the cursor where it was so the next attempt
    replays the same window; staging writes are idempotent, so the replay
    is safe.
    """

    def __init__(
        self,
        aggregator: AggregatorClient,
        db: DB,
        *,
        page_size: int = 100,
        max_pages: int = 20,
        max_mutation_retries: int = 3,
        source: str = SOURCE_PLAID,
        sync_logger: SyncToolLogger | None = None,
    ) -> None:
        """
        Initialize the sync tool.

        Args:
            aggregator: Aggregator client used to fetch changes
            db: Database facade
            page_size: Transactions requested per page
            max_pages: Pages drained per call before returning has_more=True
            max_mutation_retries: Restarts allowed when the aggregator reports
                data changing mid-pagination
            source: Source tag written on staged rows
            sync_logger: Logger override
        """
        self._aggregator = aggregator
        self._db = db
        self._page_size = page_size
        self._max_pages = max_pages
        self._max_mutation_retries = max_mutation_retries
        self._source = source
        self._logger = sync_logger or SyncToolLogger()

    def sync(self, connection_id: str, chapter_id: str) -> SyncOutcome:
        """
        Run one sync attempt for a connection.

        Args:
            connection_id: Connection to sync
            chapter_id: Chapter making the request

        Returns:
            SyncOutcome with staged counts and the new cursor

        Raises:
            NotFoundError: If the connection does not belong to the chapter
            ConflictError: If the connection has been deactivated
            UpstreamError: If the aggregator call failed
            PersistenceError: If a datastore write failed mid-sync
        """
        connection = self._db.get_connection(connection_id, chapter_id)
        if not connection.is_active:
            raise ConflictError(f"Connection {connection_id} is not active")

        self._logger.sync_start(connection.connection_id, connection.cursor)
        history = self._db.start_sync_history(
            connection_id=connection.connection_id,
            chapter_id=connection.chapter_id,
            cursor_before=connection.cursor,
        )

        added_count = 0
        modified_count = 0
        removed_count = 0
        try:
            accumulated = self._fetch_all_pages(connection)
            removed_count = len(accumulated.removed)

            writer = StagingWriter(
                self._db,
                chapter_id=connection.chapter_id,
                connection_id=connection.connection_id,
                source=self._source,
            )
            added_outcome = writer.stage_added(accumulated.added)
            added_count = added_outcome.inserted
            modified_outcome = writer.stage_modified(accumulated.modified)
            modified_count = modified_outcome.inserted + modified_outcome.updated
            self._logger.staging_complete(
                added_count, modified_count, added_outcome.unchanged
            )

            accounts_updated = self._refresh_balances(connection)

            self._db.finish_sync(
                history.sync_id,
                connection_id=connection.connection_id,
                cursor_after=accumulated.final_cursor,
                synced_at=datetime.now(),
                added=added_count,
                modified=modified_count,
                removed=removed_count,
                accounts_updated=accounts_updated,
                pages_fetched=accumulated.pages_fetched,
            )
        except Exception as e:
            error = self._wrap_error(e)
            self._record_failure(
                connection,
                history.sync_id,
                error,
                added=added_count,
                modified=modified_count,
                removed=removed_count,
            )
            if error is e:
                raise
            raise error from e

        outcome = SyncOutcome(
            connection_id=connection.connection_id,
            sync_id=history.sync_id,
            added=added_count,
            modified=modified_count,
            removed=removed_count,
            accounts_updated=accounts_updated,
            pages_fetched=accumulated.pages_fetched,
            next_cursor=accumulated.final_cursor,
            has_more=accumulated.has_more,
        )
        self._logger.sync_complete(outcome)
        return outcome

    def _fetch_all_pages(self, connection: BankConnection) -> AccumulatedTransactions:
        """
        Fetch transaction pages starting at the connection's cursor.

        Drains pages while the aggregator reports more, up to max_pages.
        When the aggregator reports that data changed mid-pagination the
        accumulators are cleared and fetching restarts from the start cursor.

        Raises:
            UpstreamError: On aggregator failure or when mutation retries
                are exhausted
        """
        start_cursor = connection.cursor
        current_cursor = start_cursor

        added_all: list[AggregatorTransaction] = []
        modified_all: list[AggregatorTransaction] = []
        removed_all: list[RemovedTransaction] = []

        pages_fetched = 0
        retry_count = 0
        next_cursor = start_cursor or ""
        has_more = False

        while True:
            try:
                self._logger.fetch_start(current_cursor or "")
                page = self._aggregator.sync_transactions(
                    connection.access_token,
                    cursor=current_cursor,
                    count=self._page_size,
                )
            except UpstreamError as e:
                if e.code != MUTATION_DURING_PAGINATION:
                    raise
                if retry_count >= self._max_mutation_retries:
                    raise UpstreamError(
                        f"Failed to sync after {self._max_mutation_retries} "
                        f"retries due to {MUTATION_DURING_PAGINATION}",
                        code=MUTATION_DURING_PAGINATION,
                        retryable=True,
                    ) from e
                retry_count += 1
                self._logger.mutation_retry(retry_count, self._max_mutation_retries)
                added_all = []
                modified_all = []
                removed_all = []
                current_cursor = start_cursor
                pages_fetched = 0
                continue

            added_all.extend(page["added"])
            modified_all.extend(page["modified"])
            removed_all.extend(page["removed"])
            pages_fetched += 1
            next_cursor = page["next_cursor"]
            has_more = page["has_more"]

            self._logger.fetch_complete(
                len(page["added"]),
                len(page["modified"]),
                len(page["removed"]),
                pages_fetched,
            )

            if not has_more:
                break
            if pages_fetched >= self._max_pages:
                self._logger.page_limit_reached(self._max_pages)
                break
            current_cursor = next_cursor

        return AccumulatedTransactions(
            added=added_all,
            modified=modified_all,
            removed=removed_all,
            final_cursor=next_cursor,
            pages_fetched=pages_fetched,
            has_more=has_more,
        )

    def _refresh_balances(self, connection: BankConnection) -> int:
        """Update stored account balances; failures do not fail the sync."""
        try:
            accounts = self._aggregator.get_accounts(connection.access_token)
            return self._db.save_accounts(
                connection_id=connection.connection_id,
                chapter_id=connection.chapter_id,
                accounts=accounts,
            )
        except (UpstreamError, SQLAlchemyError) as e:
            self._logger.balances_failed(connection.connection_id, e)
            return 0

    @staticmethod
    def _wrap_error(error: Exception) -> Exception:
        if isinstance(error, SQLAlchemyError):
            return PersistenceError(f"Datastore write failed during sync: {error}")
        return error

    def _record_failure(
        self,
        connection: BankConnection,
        sync_id: int,
        error: Exception,
        *,
        added: int,
        modified: int,
        removed: int,
    ) -> None:
        self._logger.sync_failed(connection.connection_id, sync_id, error)
        code = error.code if isinstance(error, UpstreamError) else None
        try:
            self._db.fail_sync_history(
                sync_id,
                error_message=str(error),
                error_code=code,
                added=added,
                modified=modified,
                removed=removed,
            )
            self._db.mark_error(
                connection.connection_id, code or DEFAULT_SYNC_ERROR_CODE, str(error)
            )
            if code in DEACTIVATING_ERROR_CODES:
                self._db.deactivate_connection(
                    connection.connection_id, connection.chapter_id
                )
        except SQLAlchemyError as history_error:
            self._logger.history_write_failed(sync_id, history_error)
