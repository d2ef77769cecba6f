"""Move staged transactions into the chapter ledger exactly once."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import (
    SOURCE_PLAID,
    STAGING_NEW,
    SYNC_COMPLETED,
    SYNC_FAILED,
    StagedTransaction,
)
from treasury.core.errors import PersistenceError


@dataclass
class ReconcileOutcome:
    """Counts for one reconcile call."""

    records_processed: int = 0
    records_inserted: int = 0
    records_skipped: int = 0
    records_errored: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    run_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "records_processed": self.records_processed,
            "records_inserted": self.records_inserted,
            "records_skipped": self.records_skipped,
            "records_errored": self.records_errored,
            "errors": list(self.errors),
        }


class ReconcilerLogger:
    """Handles all logging for Reconciler."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def start(self, chapter_id: str, source: str, pending: int) -> None:
        self._logger.bind(chapter_id=chapter_id, source=source).info(
            "Reconciling {} staged {} rows for chapter {}",
            pending,
            source,
            chapter_id,
        )

    def row_skipped(self, staged_transaction_id: int) -> None:
        self._logger.bind(staged_transaction_id=staged_transaction_id).debug(
            "Staged row {} already in ledger, skipped", staged_transaction_id
        )

    def row_failed(self, staged_transaction_id: int, error: Exception) -> None:
        self._logger.bind(staged_transaction_id=staged_transaction_id).error(
            "Failed to reconcile staged row {}: {}", staged_transaction_id, error
        )

    def complete(self, chapter_id: str, outcome: ReconcileOutcome) -> None:
        self._logger.bind(
            chapter_id=chapter_id,
            processed=outcome.records_processed,
            inserted=outcome.records_inserted,
            skipped=outcome.records_skipped,
            errored=outcome.records_errored,
        ).info(
            "Reconcile finished for chapter {}: {} inserted, {} skipped, {} errored",
            chapter_id,
            outcome.records_inserted,
            outcome.records_skipped,
            outcome.records_errored,
        )


class Reconciler:
    """
    Reconcile staged transactions into ledger entries.

    Each staged row is handled in its own transaction, keyed on the
    content hash. Running reconcile twice, or from two processes at once,
    never produces a second ledger entry for the same hash. A row that
    fails stays in status new for the next run.
    """

    def __init__(
        self,
        db: DB,
        *,
        reconciler_logger: ReconcilerLogger | None = None,
    ) -> None:
        self._db = db
        self._logger = reconciler_logger or ReconcilerLogger()

    def reconcile(
        self, chapter_id: str, source: str = SOURCE_PLAID
    ) -> ReconcileOutcome:
        """
        Reconcile every pending staged row of a chapter and source.

        Args:
            chapter_id: Chapter to reconcile
            source: Staging source tag

        Returns:
            ReconcileOutcome with per-run counts and row errors

        Raises:
            PersistenceError: If pending rows or the audit record cannot be read
                or written
        """
        try:
            run_id = self._db.start_reconciliation_run(
                chapter_id=chapter_id, source=source
            )
            pending = self._db.list_staged_transactions(
                chapter_id, source=source, status=STAGING_NEW
            )
            period_id = self._db.get_current_period_id(chapter_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not start reconciliation: {e}") from e

        outcome = ReconcileOutcome(run_id=run_id)
        self._logger.start(chapter_id, source, len(pending))

        for row in pending:
            outcome.records_processed += 1
            try:
                action = self._reconcile_row(row, period_id)
            except Exception as e:  # noqa: BLE001
                self._logger.row_failed(row.staged_transaction_id, e)
                outcome.records_errored += 1
                outcome.errors.append(
                    {
                        "staged_transaction_id": row.staged_transaction_id,
                        "external_id": row.external_id,
                        "error": str(e),
                    }
                )
                continue
            if action == "inserted":
                outcome.records_inserted += 1
            else:
                # "unchanged" means another run already handled the row.
                outcome.records_skipped += 1
                self._logger.row_skipped(row.staged_transaction_id)

        # A run only counts as failed when no row got through.
        all_failed = outcome.records_errored == outcome.records_processed > 0
        status = SYNC_FAILED if all_failed else SYNC_COMPLETED
        try:
            self._db.finish_reconciliation_run(
                run_id,
                processed=outcome.records_processed,
                inserted=outcome.records_inserted,
                skipped=outcome.records_skipped,
                errored=outcome.records_errored,
                error_details=outcome.errors,
                status=status,
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not record reconciliation run: {e}") from e

        self._logger.complete(chapter_id, outcome)
        return outcome

    def _reconcile_row(self, row: StagedTransaction, period_id: int | None) -> str:
        category_id = self._db.resolve_category_id(
            chapter_id=row.chapter_id,
            source=row.source,
            description=row.description,
        )
        return self._db.reconcile_staged_row(
            row.staged_transaction_id,
            category_id=category_id,
            period_id=period_id,
        )
