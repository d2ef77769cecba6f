"""Stage aggregator transactions for later reconciliation."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
import json
from typing import Any

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import SOURCE_PLAID, StageOutcome, StageRowOutcome
from treasury.core.hashing import compute_txn_hash
from treasury.infra.clients.protocol import AggregatorTransaction


def normalize_amount_cents(aggregator_amount: float) -> int:
    """Convert an aggregator amount to signed chapter cents.

    The aggregator reports money leaving the account as positive; the
    ledger treats positive as money coming in, so the sign is flipped.
    """
    cents = (Decimal(str(aggregator_amount)) * 100).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return -int(cents)


def build_staged_row(
    txn: AggregatorTransaction,
    *,
    chapter_id: str,
    connection_id: str | None,
    source: str = SOURCE_PLAID,
) -> dict[str, Any]:
    """Map an aggregator transaction to staged_transactions column values."""
    posted_at = date.fromisoformat(txn["date"])
    amount_cents = normalize_amount_cents(txn["amount"])
    description = txn["name"]
    return {
        "chapter_id": chapter_id,
        "source": source,
        "external_id": txn["transaction_id"],
        "connection_id": connection_id,
        "account_id": txn.get("account_id"),
        "hash": compute_txn_hash(
            txn["transaction_id"], source, posted_at, amount_cents, description
        ),
        "posted_at": posted_at,
        "amount_cents": amount_cents,
        "description": description,
        "raw_data": json.dumps(txn.get("raw") or {}, sort_keys=True, default=str),
    }


class StagingWriter:
    """Idempotent writes into the staging table.

    Rows are keyed on (chapter_id, source, external_id), so replaying the
    same cursor window never creates duplicates.
    """

    def __init__(
        self,
        db: DB,
        *,
        chapter_id: str,
        connection_id: str | None = None,
        source: str = SOURCE_PLAID,
    ) -> None:
        self._db = db
        self._chapter_id = chapter_id
        self._connection_id = connection_id
        self._source = source

    def stage_added(self, txns: Iterable[AggregatorTransaction]) -> StageOutcome:
        """Stage newly reported transactions.

        Only real inserts count as added. A key that is already staged is
        refreshed if it is still waiting for reconciliation and left alone
        once processed or skipped.
        """
        return self._stage(txns, reset_status=False)

    def stage_modified(self, txns: Iterable[AggregatorTransaction]) -> StageOutcome:
        """Stage transactions the aggregator reports as changed.

        Every row is rehashed and put back to status new so the next
        reconcile looks at it again.
        """
        return self._stage(txns, reset_status=True)

    def _stage(
        self,
        txns: Iterable[AggregatorTransaction],
        *,
        reset_status: bool,
    ) -> StageOutcome:
        outcome = StageOutcome()
        for txn in txns:
            row = build_staged_row(
                txn,
                chapter_id=self._chapter_id,
                connection_id=self._connection_id,
                source=self._source,
            )
            action, staged_id = self._db.upsert_staged_transaction(
                row, reset_status=reset_status
            )
            if action == "inserted":
                outcome.inserted += 1
            elif action == "updated":
                outcome.updated += 1
            else:
                outcome.unchanged += 1
            outcome.rows.append(
                StageRowOutcome(
                    external_id=row["external_id"],
                    action=action,
                    staged_transaction_id=staged_id,
                )
            )
        return outcome
