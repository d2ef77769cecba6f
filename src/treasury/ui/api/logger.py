"""Logging for the action endpoint."""

from __future__ import annotations

import loguru
from loguru import logger


class ApiLogger:
    """Handles all logging for the action router and HTTP server."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def server_starting(self, host: str, port: int) -> None:
        """Log server startup."""
        self._logger.info("=== Treasury API listening on {}:{} ===", host, port)

    def server_stopped(self) -> None:
        """Log server stopped."""
        self._logger.info("=== Treasury API stopped ===")

    def action_dispatching(self, action: str, user_id: str) -> None:
        """Log action dispatch."""
        self._logger.bind(action=action, user_id=user_id).info(
            "Dispatching {} for user {}", action, user_id
        )

    def action_completed(self, action: str) -> None:
        self._logger.bind(action=action).debug("Action {} completed", action)

    def action_rejected(
        self, action: str | None, status: int, error: Exception
    ) -> None:
        """Log an expected error returned to the client."""
        self._logger.bind(action=action, status=status).warning(
            "Action {} rejected with {}: {}", action, status, error
        )

    def handler_error(self, action: str | None, error: Exception) -> None:
        """Log unexpected handler error with traceback."""
        self._logger.bind(action=action).exception(
            "Unexpected error handling {}: {}", action, error
        )
