from __future__ import annotations

from dotenv import load_dotenv
import typer

from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import SOURCE_PLAID, ConnectionView, history_to_dict
from treasury.core.config import TreasuryConfig, load_config_from_env
from treasury.core.errors import TreasuryError
from treasury.infra.clients.plaid import PlaidClient
from treasury.tools.reconcile.reconcile_tool import Reconciler
from treasury.tools.sync.fanout import SyncAllTool
from treasury.tools.sync.sync_tool import SyncTool

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="Treasury: chapter bank sync and reconciliation.",
    no_args_is_help=True,
)


def _load_config() -> TreasuryConfig:
    try:
        return load_config_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None


def _plaid_client(config: TreasuryConfig) -> PlaidClient:
    try:
        return PlaidClient.from_env(
            env=config.plaid_env, timeout_seconds=config.http_timeout_seconds
        )
    except ValueError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(1) from None


def _sync_tool(config: TreasuryConfig, db: DB) -> SyncTool:
    return SyncTool(
        _plaid_client(config),
        db,
        page_size=config.sync_page_size,
        max_pages=config.sync_max_pages,
    )


@app.command("init-db")
def init_db() -> None:
    """Create any missing tables in DATABASE_URL."""
    config = _load_config()
    DB(config.database_url).create_schema()
    typer.echo(f"Schema ready at {config.database_url}")


@app.command("add-member")
def add_member(
    user_id: str = typer.Argument(..., help="User id the API token maps to"),
    chapter_id: str = typer.Argument(..., help="Chapter the user belongs to"),
    full_name: str | None = typer.Option(None, help="Display name"),
) -> None:
    """Record a user's chapter membership."""
    config = _load_config()
    DB(config.database_url).save_user_profile(
        user_id=user_id, chapter_id=chapter_id, full_name=full_name
    )
    typer.echo(f"{user_id} is a member of {chapter_id}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8080, help="Port to listen on"),
) -> None:
    """Run the JSON action endpoint."""
    from treasury.ui.api.server import serve as serve_api

    config = _load_config()
    if not config.api_tokens:
        typer.echo("TREASURY_API_TOKENS is empty; every request will be rejected.")
    db = DB(config.database_url)
    typer.echo(f"Treasury API running at http://{host}:{port}/")
    typer.echo("Press Ctrl+C to stop.")
    serve_api(
        host=host,
        port=port,
        db=db,
        aggregator=_plaid_client(config),
        config=config,
    )


@app.command("sync")
def sync(
    connection_id: str = typer.Argument(..., help="Connection to sync"),
    chapter_id: str = typer.Argument(..., help="Chapter owning the connection"),
) -> None:
    """Sync one bank connection into staging."""
    config = _load_config()
    db = DB(config.database_url)
    try:
        outcome = _sync_tool(config, db).sync(connection_id, chapter_id)
    except TreasuryError as e:
        typer.echo(f"Sync failed: {e}", err=True)
        raise typer.Exit(1) from None

    typer.echo(
        f"Sync {outcome.sync_id}: {outcome.added} added, "
        f"{outcome.modified} modified, {outcome.removed} removed "
        f"({outcome.pages_fetched} pages)"
    )
    if outcome.has_more:
        typer.echo("More changes are pending; run sync again to continue.")


@app.command("sync-all")
def sync_all(
    chapter_id: str = typer.Argument(..., help="Chapter to sync"),
) -> None:
    """Sync every active connection of a chapter."""
    config = _load_config()
    db = DB(config.database_url)
    tool = SyncAllTool(
        _sync_tool(config, db), db, max_workers=config.sync_max_workers
    )
    results = tool.sync_all(chapter_id)
    if not results:
        typer.echo("No active connections.")
        return

    for result in results:
        label = result.institution_name or result.connection_id
        if result.outcome is not None:
            typer.echo(
                f"  + {label}: {result.outcome.added} added, "
                f"{result.outcome.modified} modified, "
                f"{result.outcome.removed} removed"
            )
        else:
            retry = "retryable" if result.retryable else "needs attention"
            typer.echo(f"  - {label}: {result.error} ({retry})")

    failed = sum(1 for r in results if r.status == "error")
    if failed:
        raise typer.Exit(1)


@app.command("reconcile")
def reconcile(
    chapter_id: str = typer.Argument(..., help="Chapter to reconcile"),
    source: str = typer.Option(SOURCE_PLAID, help="Staging source tag"),
) -> None:
    """Move pending staged transactions into the ledger."""
    config = _load_config()
    try:
        outcome = Reconciler(DB(config.database_url)).reconcile(chapter_id, source)
    except TreasuryError as e:
        typer.echo(f"Reconcile failed: {e}", err=True)
        raise typer.Exit(1) from None

    typer.echo(
        f"Processed {outcome.records_processed}: {outcome.records_inserted} "
        f"inserted, {outcome.records_skipped} skipped, "
        f"{outcome.records_errored} errored"
    )
    for error in outcome.errors:
        typer.echo(f"  - row {error['staged_transaction_id']}: {error['error']}")


@app.command("connections")
def connections(
    chapter_id: str = typer.Argument(..., help="Chapter to list"),
) -> None:
    """List a chapter's bank connections."""
    config = _load_config()
    rows = DB(config.database_url).list_connections(chapter_id)
    if not rows:
        typer.echo("No connections.")
        return
    for connection in rows:
        view = ConnectionView.from_model(connection)
        state = "active" if view.is_active else "inactive"
        line = f"{view.connection_id}  {view.institution_name}  {state}"
        if view.last_synced_at:
            line += f"  last sync {view.last_synced_at:%Y-%m-%d %H:%M}"
        if view.error_code:
            line += f"  [{view.error_code}]"
        typer.echo(line)


@app.command("history")
def history(
    chapter_id: str = typer.Argument(..., help="Chapter to show"),
    connection_id: str | None = typer.Option(None, help="Limit to one connection"),
    limit: int = typer.Option(20, help="Number of records"),
) -> None:
    """Show recent sync attempts."""
    config = _load_config()
    records = DB(config.database_url).list_sync_history(
        chapter_id, connection_id=connection_id, limit=limit
    )
    if not records:
        typer.echo("No sync history.")
        return
    for record in records:
        data = history_to_dict(record)
        line = (
            f"#{data['sync_id']}  {data['started_at']}  {data['sync_status']}  "
            f"+{data['added']} ~{data['modified']} -{data['removed']}"
        )
        if data["error_message"]:
            line += f"  {data['error_message']}"
        typer.echo(line)


if __name__ == "__main__":
    app()
