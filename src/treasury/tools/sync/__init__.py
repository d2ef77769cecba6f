"""Sync tools package."""

from treasury.tools.sync.fanout import ConnectionSyncResult, SyncAllTool
from treasury.tools.sync.staging import StagingWriter, build_staged_row
from treasury.tools.sync.sync_tool import SyncOutcome, SyncTool

__all__ = [
    # Single connection
    "SyncTool",
    "SyncOutcome",
    # Fan-out
    "SyncAllTool",
    "ConnectionSyncResult",
    # Staging
    "StagingWriter",
    "build_staged_row",
]
