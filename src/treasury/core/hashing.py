"""Content hashing for staged transactions.

The hash is the only mechanism used to decide whether two observations are
the same transaction, both when staging and when reconciling into the
ledger. Any change to the normalization below changes every hash, so
existing rows must be rehashed in the same migration.
"""

from __future__ import annotations

from datetime import date
import hashlib

HASH_DELIMITER = "|"


def format_amount(amount_cents: int) -> str:
    """Render signed cents as a fixed two-decimal string (e.g. ``-12.50``)."""
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(amount_cents), 100)
    return f"{sign}{whole}.{cents:02d}"


def compute_txn_hash(
    external_id: str | None,
    source: str | None,
    posted_at: date | None,
    amount_cents: int | None,
    description: str | None,
) -> str:
    """Return the SHA-256 fingerprint of a transaction's identity fields.

    Args:
        external_id: Aggregator transaction ID
        source: Source tag (e.g. "PLAID")
        posted_at: Transaction date
        amount_cents: Signed amount in cents, positive increases chapter funds
        description: Transaction description as staged

    Returns:
        Lowercase hex digest
    """
    parts = [
        external_id or "",
        source or "",
        posted_at.isoformat() if posted_at is not None else "",
        format_amount(amount_cents) if amount_cents is not None else "",
        description or "",
    ]
    data = HASH_DELIMITER.join(parts).encode("utf-8")
    return hashlib.sha256(data).hexdigest()
