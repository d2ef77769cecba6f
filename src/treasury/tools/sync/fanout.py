"""Sync every active connection of a chapter with per-connection isolation."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Literal

import loguru
from loguru import logger

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import BankConnection
from treasury.core.errors import TreasuryError, UpstreamError
from treasury.tools.sync.sync_tool import SyncOutcome, SyncTool


@dataclass
class ConnectionSyncResult:
    """Outcome of one connection inside a sync_all call."""

    connection_id: str
    status: Literal["success", "error"]
    institution_name: str | None = None
    outcome: SyncOutcome | None = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "connection_id": self.connection_id,
            "institution_name": self.institution_name,
            "status": self.status,
        }
        if self.outcome is not None:
            data.update(
                added=self.outcome.added,
                modified=self.outcome.modified,
                removed=self.outcome.removed,
                has_more=self.outcome.has_more,
            )
        if self.status == "error":
            data.update(
                error=self.error,
                error_code=self.error_code,
                retryable=self.retryable,
            )
        return data


class SyncAllLogger:
    """Handles logging for SyncAllTool."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def start(self, chapter_id: str, count: int) -> None:
        self._logger.bind(chapter_id=chapter_id, connections=count).info(
            "Syncing {} active connections for chapter {}", count, chapter_id
        )

    def connection_failed(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Connection {} failed to sync: {}", connection_id, error
        )

    def complete(self, chapter_id: str, succeeded: int, failed: int) -> None:
        self._logger.bind(
            chapter_id=chapter_id, succeeded=succeeded, failed=failed
        ).info(
            "Sync all finished for chapter {}: {} succeeded, {} failed",
            chapter_id,
            succeeded,
            failed,
        )


class SyncAllTool:
    """
    Run SyncTool over every active connection of a chapter.

    One connection failing never stops the others; each gets its own
    result entry. With max_workers above one the connections are synced
    on a thread pool, otherwise one after another.
    """

    def __init__(
        self,
        sync_tool: SyncTool,
        db: DB,
        *,
        max_workers: int = 1,
        sync_all_logger: SyncAllLogger | None = None,
    ) -> None:
        self._sync_tool = sync_tool
        self._db = db
        self._max_workers = max(1, max_workers)
        self._logger = sync_all_logger or SyncAllLogger()

    def sync_all(self, chapter_id: str) -> list[ConnectionSyncResult]:
        """
        Sync all active connections of a chapter.

        Args:
            chapter_id: Chapter whose connections are synced

        Returns:
            One result per active connection, in connection creation order.
            Empty when the chapter has no active connections.
        """
        connections = self._db.get_active_connections(chapter_id)
        self._logger.start(chapter_id, len(connections))
        if not connections:
            return []

        if self._max_workers == 1 or len(connections) == 1:
            results = [self._sync_one(c) for c in connections]
        else:
            workers = min(self._max_workers, len(connections))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(self._sync_one, connections))

        succeeded = sum(1 for r in results if r.status == "success")
        self._logger.complete(chapter_id, succeeded, len(results) - succeeded)
        return results

    def _sync_one(self, connection: BankConnection) -> ConnectionSyncResult:
        try:
            outcome = self._sync_tool.sync(
                connection.connection_id, connection.chapter_id
            )
        except Exception as e:  # noqa: BLE001
            self._logger.connection_failed(connection.connection_id, e)
            return ConnectionSyncResult(
                connection_id=connection.connection_id,
                institution_name=connection.institution_name,
                status="error",
                error=str(e),
                error_code=e.code if isinstance(e, UpstreamError) else None,
                retryable=_is_retryable(e),
            )
        return ConnectionSyncResult(
            connection_id=connection.connection_id,
            institution_name=connection.institution_name,
            status="success",
            outcome=outcome,
        )


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, UpstreamError):
        return error.retryable
    # Datastore hiccups and unexpected faults are worth another attempt;
    # ownership or state conflicts are not.
    return not isinstance(error, TreasuryError) or error.status_code >= 500
