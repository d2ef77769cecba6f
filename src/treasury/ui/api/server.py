"""JSON action endpoint over HTTP.

A single ``POST /`` route accepts ``{"action": ..., ...}`` bodies with a
bearer token in the Authorization header. Responses are JSON; errors come
back as ``{"error": message}`` with the status code of the error class.
"""

from __future__ import annotations

from http import HTTPStatus
import json

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import uvicorn

from treasury.adapters.db.facade import DB
from treasury.core.config import TreasuryConfig
from treasury.core.errors import TreasuryError
from treasury.infra.clients.protocol import AggregatorClient
from treasury.tools.link.link_tool import LinkTool
from treasury.tools.reconcile.reconcile_tool import Reconciler
from treasury.tools.sync.fanout import SyncAllTool
from treasury.tools.sync.sync_tool import SyncTool
from treasury.ui.api.auth import Authenticator, Caller, StaticTokenAuthenticator
from treasury.ui.api.handlers import ActionHandlers
from treasury.ui.api.logger import ApiLogger
from treasury.ui.api.router import ActionRouter

MAX_BODY_BYTES = 1024 * 1024


def build_router(
    *,
    db: DB,
    aggregator: AggregatorClient,
    config: TreasuryConfig,
    api_logger: ApiLogger | None = None,
) -> ActionRouter:
    """Wire tools and handlers into a router."""
    sync_tool = SyncTool(
        aggregator,
        db,
        page_size=config.sync_page_size,
        max_pages=config.sync_max_pages,
    )
    handlers = ActionHandlers(
        db=db,
        link_tool=LinkTool(aggregator, db),
        sync_tool=sync_tool,
        sync_all_tool=SyncAllTool(
            sync_tool, db, max_workers=config.sync_max_workers
        ),
        reconciler=Reconciler(db),
    )
    router = ActionRouter(api_logger)
    handlers.register(router)
    return router


def _error_response(message: str, status: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _declared_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length", "0"))
    except ValueError:
        return 0


def create_app(
    *,
    router: ActionRouter,
    authenticator: Authenticator,
    api_logger: ApiLogger | None = None,
) -> FastAPI:
    """Create the FastAPI app serving the action endpoint."""
    api_logger = api_logger or ApiLogger()
    app = FastAPI(title="Treasury API")

    @app.exception_handler(TreasuryError)
    async def treasury_error_handler(
        request: Request, exc: TreasuryError
    ) -> JSONResponse:
        api_logger.action_rejected(None, exc.status_code, exc)
        return _error_response(str(exc), exc.status_code)

    def get_caller(authorization: str | None = Header(default=None)) -> Caller:
        return authenticator.authenticate(authorization)

    @app.post("/")
    async def action_endpoint(
        request: Request, caller: Caller = Depends(get_caller)
    ) -> JSONResponse:
        """Dispatch one action request."""
        if _declared_length(request) > MAX_BODY_BYTES:
            return _error_response(
                "Request body too large", HTTPStatus.REQUEST_ENTITY_TOO_LARGE
            )
        raw_body = await request.body()
        if len(raw_body) > MAX_BODY_BYTES:
            return _error_response(
                "Request body too large", HTTPStatus.REQUEST_ENTITY_TOO_LARGE
            )

        try:
            body = json.loads(raw_body) if raw_body else None
        except ValueError:
            return _error_response(
                "Request body must be valid JSON", HTTPStatus.BAD_REQUEST
            )

        status, payload = await router.handle(caller, body)
        return JSONResponse(jsonable_encoder(payload), status_code=status)

    return app


def serve(
    *,
    host: str,
    port: int,
    db: DB,
    aggregator: AggregatorClient,
    config: TreasuryConfig,
) -> None:
    """Run the action endpoint until interrupted."""
    api_logger = ApiLogger()
    router = build_router(
        db=db, aggregator=aggregator, config=config, api_logger=api_logger
    )
    app = create_app(
        router=router,
        authenticator=StaticTokenAuthenticator(config.api_tokens, db),
        api_logger=api_logger,
    )
    api_logger.server_starting(host, port)
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        api_logger.server_stopped()
