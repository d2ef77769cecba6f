"""One handler per action.

Each handler validates its slice of the request body with a pydantic model,
enforces the chapter gate, and runs the blocking tool call in a worker
thread so the event loop stays free.
"""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import (
    SOURCE_PLAID,
    BankAccount,
    ConnectionView,
    history_to_dict,
)
from treasury.core.errors import ValidationError
from treasury.tools.link.link_tool import LinkTool
from treasury.tools.reconcile.reconcile_tool import Reconciler
from treasury.tools.sync.fanout import SyncAllTool
from treasury.tools.sync.sync_tool import SyncTool
from treasury.ui.api.auth import Caller
from treasury.ui.api.router import ActionRouter


class ActionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    action: str


class ChapterRequest(ActionRequest):
    chapter_id: str = Field(min_length=1)


class CreateLinkTokenRequest(ActionRequest):
    chapter_id: str | None = None


class ExchangeTokenRequest(ChapterRequest):
    public_token: str = Field(min_length=1)


class ConnectionRequest(ChapterRequest):
    connection_id: str = Field(min_length=1)


class ReconcileRequest(ChapterRequest):
    source: str = SOURCE_PLAID


class SyncHistoryRequest(ChapterRequest):
    connection_id: str | None = None
    limit: int = Field(default=20, ge=1, le=100)


RequestT = TypeVar("RequestT", bound=ActionRequest)


def parse_request(model: type[RequestT], body: dict[str, Any]) -> RequestT:
    """Validate a request body, raising the API's ValidationError."""
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid request: {problems}") from None


def account_to_dict(account: BankAccount) -> dict[str, Any]:
    return {
        "account_id": account.account_id,
        "name": account.name,
        "mask": account.mask,
        "type": account.type,
        "subtype": account.subtype,
        "current_balance_cents": account.current_balance_cents,
        "available_balance_cents": account.available_balance_cents,
        "iso_currency_code": account.iso_currency_code,
        "last_balance_update": (
            account.last_balance_update.isoformat()
            if account.last_balance_update
            else None
        ),
    }


class ActionHandlers:
    """Handlers for every action the endpoint serves."""

    def __init__(
        self,
        *,
        db: DB,
        link_tool: LinkTool,
        sync_tool: SyncTool,
        sync_all_tool: SyncAllTool,
        reconciler: Reconciler,
    ) -> None:
        self._db = db
        self._link_tool = link_tool
        self._sync_tool = sync_tool
        self._sync_all_tool = sync_all_tool
        self._reconciler = reconciler

    def register(self, router: ActionRouter) -> None:
        """Register all action handlers with the router."""
        router.register("create_link_token", self.create_link_token)
        router.register("exchange_token", self.exchange_token)
        router.register("sync_transactions", self.sync_transactions)
        router.register("sync_all", self.sync_all)
        router.register("reconcile", self.reconcile)
        router.register("get_connections", self.get_connections)
        router.register("get_sync_history", self.get_sync_history)
        router.register("deactivate_connection", self.deactivate_connection)

    async def create_link_token(
        self, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        request = parse_request(CreateLinkTokenRequest, body)
        if request.chapter_id is not None:
            caller.require_chapter(request.chapter_id)
        link_token = await asyncio.to_thread(self._link_tool.create_link_token, caller)
        return {"link_token": link_token}

    async def exchange_token(
        self, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        request = parse_request(ExchangeTokenRequest, body)
        connection = await asyncio.to_thread(
            self._link_tool.exchange_token,
            caller,
            request.chapter_id,
            request.public_token,
        )
        view = ConnectionView.from_model(connection)
        return {
            "success": True,
            "connection_id": view.connection_id,
            "institution_name": view.institution_name,
            "connection": view.to_dict(),
        }

    async def sync_transactions(
        self, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        request = parse_request(ConnectionRequest, body)
        caller.require_chapter(request.chapter_id)
        outcome = await asyncio.to_thread(
            self._sync_tool.sync, request.connection_id, request.chapter_id
        )
        return {"success": True, **outcome.to_dict()}

    async def sync_all(self, caller: Caller, body: dict[str, Any]) -> dict[str, Any]:
        request = parse_request(ChapterRequest, body)
        caller.require_chapter(request.chapter_id)
        results = await asyncio.to_thread(
            self._sync_all_tool.sync_all, request.chapter_id
        )
        succeeded = sum(1 for r in results if r.status == "success")
        return {
            "success": True,
            "synced": succeeded,
            "failed": len(results) - succeeded,
            "results": [r.to_dict() for r in results],
        }

    async def reconcile(self, caller: Caller, body: dict[str, Any]) -> dict[str, Any]:
        request = parse_request(ReconcileRequest, body)
        caller.require_chapter(request.chapter_id)
        outcome = await asyncio.to_thread(
            self._reconciler.reconcile, request.chapter_id, request.source
        )
        return {"success": True, **outcome.to_dict()}

    async def get_connections(
        self, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        request = parse_request(ChapterRequest, body)
        caller.require_chapter(request.chapter_id)

        def load() -> list[dict[str, Any]]:
            connections = []
            for connection in self._db.list_connections(request.chapter_id):
                data = ConnectionView.from_model(connection).to_dict()
                data["accounts"] = [
                    account_to_dict(a)
                    for a in self._db.list_accounts(connection.connection_id)
                ]
                connections.append(data)
            return connections

        return {"connections": await asyncio.to_thread(load)}

    async def get_sync_history(
        self, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        request = parse_request(SyncHistoryRequest, body)
        caller.require_chapter(request.chapter_id)
        if request.connection_id is not None:
            # Tenant check on the connection itself.
            await asyncio.to_thread(
                self._db.get_connection, request.connection_id, request.chapter_id
            )
        records = await asyncio.to_thread(
            self._db.list_sync_history,
            request.chapter_id,
            connection_id=request.connection_id,
            limit=request.limit,
        )
        return {"history": [history_to_dict(r) for r in records]}

    async def deactivate_connection(
        self, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        request = parse_request(ConnectionRequest, body)
        caller.require_chapter(request.chapter_id)
        await asyncio.to_thread(
            self._db.deactivate_connection, request.connection_id, request.chapter_id
        )
        return {"success": True, "connection_id": request.connection_id}
