"""Error taxonomy shared by the sync engine and the action endpoint."""

from __future__ import annotations

from http import HTTPStatus


class TreasuryError(Exception):
    """Base error carrying the HTTP status used at the API boundary."""

    status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR


class ValidationError(TreasuryError):
    """Request is malformed (missing fields, unknown action)."""

    status_code = HTTPStatus.BAD_REQUEST


class UnauthorizedError(TreasuryError):
    """Caller is not a member of the chapter it is acting on."""

    status_code = HTTPStatus.UNAUTHORIZED


class NotFoundError(TreasuryError):
    """Referenced connection or record does not exist for this chapter."""

    status_code = HTTPStatus.NOT_FOUND


class ConflictError(TreasuryError):
    """Operation conflicts with existing state (e.g. item already linked)."""

    status_code = HTTPStatus.CONFLICT


class UpstreamError(TreasuryError):
    """The bank-data aggregator call failed.

    Attributes:
        code: Aggregator error code when one was returned (e.g.
            ``ITEM_LOGIN_REQUIRED``), otherwise None
        retryable: True for transient failures (network, timeouts,
            rate limits); False when the user must re-authenticate
    """

    status_code = HTTPStatus.BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class PersistenceError(TreasuryError):
    """A datastore write failed mid-operation."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
