"""Link-session creation and public-token exchange."""

from __future__ import annotations

import loguru
from loguru import logger

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import BankConnection
from treasury.core.errors import UpstreamError
from treasury.infra.clients.protocol import AggregatorClient
from treasury.ui.api.auth import Caller

UNKNOWN_INSTITUTION = "Unknown Bank"


class LinkToolLogger:
    """Handles logging for LinkTool. Tokens are never logged."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def link_token_created(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).info(
            "Created link token for user {}", user_id
        )

    def institution_lookup_failed(self, item_id: str, error: Exception) -> None:
        self._logger.bind(item_id=item_id).warning(
            "Institution lookup failed for item {}: {}", item_id, error
        )

    def connection_created(self, connection: BankConnection) -> None:
        self._logger.bind(
            connection_id=connection.connection_id,
            chapter_id=connection.chapter_id,
        ).info(
            "Linked {} as connection {} for chapter {}",
            connection.institution_name,
            connection.connection_id,
            connection.chapter_id,
        )

    def accounts_snapshot_failed(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Initial account snapshot failed for connection {}: {}",
            connection_id,
            error,
        )


class LinkTool:
    """Create aggregator link sessions and turn their result into connections."""

    def __init__(
        self,
        aggregator: AggregatorClient,
        db: DB,
        *,
        link_logger: LinkToolLogger | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._db = db
        self._logger = link_logger or LinkToolLogger()

    def create_link_token(self, caller: Caller) -> str:
        """Open a link session for the caller and return its token."""
        token = self._aggregator.create_link_token(user_id=caller.user_id)
        self._logger.link_token_created(caller.user_id)
        return token

    def exchange_token(
        self,
        caller: Caller,
        chapter_id: str,
        public_token: str,
    ) -> BankConnection:
        """
        Exchange a link public token and store the resulting connection.

        The chapter check runs before any aggregator call, so an unauthorized
        caller never consumes the public token.

        Args:
            caller: Authenticated caller
            chapter_id: Chapter the connection is for
            public_token: Short-lived token from the link session

        Returns:
            The created BankConnection

        Raises:
            UnauthorizedError: If the caller does not belong to the chapter
            UpstreamError: If the exchange itself fails
            ConflictError: If the bank item is already linked
        """
        caller.require_chapter(chapter_id)

        exchange = self._aggregator.exchange_public_token(public_token)
        item_id = exchange["item_id"]

        institution_id: str | None = None
        institution_name = UNKNOWN_INSTITUTION
        try:
            item = self._aggregator.get_item_info(exchange["access_token"])
            institution_id = item["institution_id"]
            institution_name = item["institution_name"] or UNKNOWN_INSTITUTION
        except UpstreamError as e:
            self._logger.institution_lookup_failed(item_id, e)

        connection = self._db.create_connection(
            chapter_id=chapter_id,
            item_id=item_id,
            access_token=exchange["access_token"],
            institution_id=institution_id,
            institution_name=institution_name,
            created_by=caller.user_id,
        )
        self._logger.connection_created(connection)

        try:
            accounts = self._aggregator.get_accounts(connection.access_token)
            self._db.save_accounts(
                connection_id=connection.connection_id,
                chapter_id=chapter_id,
                accounts=accounts,
            )
        except UpstreamError as e:
            self._logger.accounts_snapshot_failed(connection.connection_id, e)

        return connection
