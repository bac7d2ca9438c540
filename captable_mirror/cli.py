from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import typer
from sqlalchemy import text

from captable_mirror.config import IndexerConfig, load_config
from captable_mirror.db.session import get_session, get_session_factory, init_db
from captable_mirror.errors import CapTableMirrorError
from captable_mirror.logging_config import configure_logging

app = typer.Typer(add_completion=False, help="Cap-table mirror for tokenized securities - CLI")


def _config(ctx: typer.Context) -> IndexerConfig:
    return ctx.obj["config"]


def _echo_json(obj: Any) -> None:
    typer.echo(json.dumps(obj, indent=2, default=str))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except CapTableMirrorError as exc:
        typer.echo(f"Error [{exc.code}]: {exc.message}", err=True)
        raise typer.Exit(code=1)


def _write_or_echo(content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(content)
        typer.echo(f"Written to {output}")
    else:
        typer.echo(content, nl=not content.endswith("\n"))


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to indexer YAML config"),
    log_level: Optional[str] = typer.Option(None, help="Log level (or env LOG_LEVEL)"),
) -> None:
    """Load configuration and set up logging and the database for every command."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise typer.BadParameter(str(exc))
    configure_logging(config.environment, log_level)
    if config.database_url:
        get_session_factory(config.database_url)
    ctx.obj = {"config": config}


@app.command("db-check")
def db_check() -> None:
    """Check DB connectivity and print basic info."""
    with get_session() as session:
        session.execute(text("SELECT 1"))
        if session.get_bind().dialect.name == "sqlite":
            version = session.execute(text("SELECT sqlite_version()")).scalar_one()
        else:
            version = session.execute(text("SELECT version()")).scalar_one()
        typer.echo("DB OK")
        typer.echo(str(version))


@app.command("init-db")
def init_db_cmd() -> None:
    """Create all tables directly (local development; production uses alembic)."""
    init_db()
    typer.echo("Tables created")


@app.command("index")
def index(
    ctx: typer.Context,
    rpc_url: Optional[str] = typer.Option(None, help="Ledger RPC URL (or env SOLANA_RPC_URL)"),
    program_id: Optional[str] = typer.Option(None, help="Program identity to follow (or env CAPTABLE_PROGRAM_ID)"),
) -> None:
    """Follow the program's logs and project events until interrupted."""
    from captable_mirror.adapters.solana_rpc import SolanaRpcClient
    from captable_mirror.decoder import default_decoder
    from captable_mirror.pipeline import IngestPipeline
    from captable_mirror.projector import EventProjector
    from captable_mirror.subscription import SubscriptionManager

    config = _config(ctx).with_overrides(rpc_url=rpc_url, program_id=program_id)
    if not config.program_id:
        raise typer.BadParameter("program id is required (--program-id or CAPTABLE_PROGRAM_ID)")

    client = SolanaRpcClient.from_config(config)
    pipeline = IngestPipeline(
        default_decoder(),
        EventProjector(program_id=config.program_id),
        source=client,
        program_id=config.program_id,
        commitment=config.commitment,
    )

    gave_up: list[str] = []

    def _on_max_reconnects(reason: str) -> None:
        gave_up.append(reason)
        typer.echo(f"Indexer stopped: {reason}", err=True)

    manager = SubscriptionManager.from_config(client, pipeline, config, on_max_reconnects=_on_max_reconnects)
    with _cli_errors():
        manager.start()
    typer.echo(f"Indexing {config.program_id} via {config.rpc_url} (Ctrl+C to stop)")
    try:
        manager.wait()
    except KeyboardInterrupt:
        manager.stop()
    status = manager.status()
    typer.echo(f"Stopped: state={status.state} last_position={status.last_processed_position}")
    if gave_up:
        raise typer.Exit(code=1)


@app.command("backfill")
def backfill(
    ctx: typer.Context,
    mint: str = typer.Option(..., help="Security mint address"),
    from_position: int = typer.Option(0, help="Only replay signatures at or after this slot"),
    max_pages: int = typer.Option(1, help="Signature pages to walk (newest first)"),
    rpc_url: Optional[str] = typer.Option(None, help="Ledger RPC URL (or env SOLANA_RPC_URL)"),
    program_id: Optional[str] = typer.Option(None, help="Program identity (or env CAPTABLE_PROGRAM_ID)"),
) -> None:
    """Replay historical transactions through the projector."""
    from captable_mirror.adapters.solana_rpc import SolanaRpcClient
    from captable_mirror.backfill import BackfillCoordinator
    from captable_mirror.decoder import default_decoder
    from captable_mirror.pipeline import IngestPipeline
    from captable_mirror.projector import EventProjector

    if max_pages < 1 or max_pages > 1000:
        raise typer.BadParameter("max_pages must be between 1 and 1000")
    config = _config(ctx).with_overrides(rpc_url=rpc_url, program_id=program_id)
    if not config.program_id:
        raise typer.BadParameter("program id is required (--program-id or CAPTABLE_PROGRAM_ID)")

    client = SolanaRpcClient.from_config(config)
    pipeline = IngestPipeline(
        default_decoder(),
        EventProjector(program_id=config.program_id),
        source=client,
        program_id=config.program_id,
        commitment=config.commitment,
    )
    coordinator = BackfillCoordinator(
        client,
        pipeline,
        config.program_id,
        page_size=config.signature_page_size,
        commitment=config.commitment,
    )
    with _cli_errors():
        report = coordinator.backfill(mint, from_position=from_position, max_pages=max_pages)
    typer.echo(
        f"Backfill: seen={report.signatures_seen} processed={report.processed} skipped={report.skipped} "
        f"missing={report.missing} failed={report.failed} events_applied={report.events_applied} "
        f"last_slot={report.last_slot}"
    )


@app.command("cap-table")
def cap_table(
    mint: str = typer.Option(..., help="Security mint address"),
    block_height: Optional[int] = typer.Option(None, help="Historical ledger position"),
    fmt: str = typer.Option("text", "--format", help="text | csv | json"),
    output: Optional[str] = typer.Option(None, help="Write to file instead of stdout"),
) -> None:
    """Print the cap table for a security."""
    from captable_mirror.ownership import OwnershipEngine
    from captable_mirror.report import export_cap_table_csv, export_cap_table_json, render_text

    if fmt not in ("text", "csv", "json"):
        raise typer.BadParameter("format must be one of: text, csv, json")
    engine = OwnershipEngine()
    with _cli_errors():
        table = engine.compute_cap_table(mint, block_height)
        if fmt == "csv":
            content = export_cap_table_csv(table)
        elif fmt == "json":
            content = export_cap_table_json(table)
        else:
            content = render_text(table, engine.concentration_metrics(mint))
    _write_or_echo(content, output)


@app.command("snapshot-create")
def snapshot_create(
    mint: str = typer.Option(..., help="Security mint address"),
    block_height: Optional[int] = typer.Option(None, help="Ledger position (default: latest projected)"),
    reason: str = typer.Option("Manual snapshot", help="Reason stored with the snapshot"),
    created_by: str = typer.Option("system", help="Who requested the snapshot"),
) -> None:
    """Create (or return the existing) snapshot at a ledger position."""
    from captable_mirror.ownership import OwnershipEngine

    with _cli_errors():
        snap = OwnershipEngine().create_snapshot(mint, block_height, reason=reason, created_by=created_by)
    typer.echo(f"Snapshot {snap.id} at block height {snap.block_height}: {snap.holder_count} holders")


@app.command("snapshots")
def snapshots(mint: str = typer.Option(..., help="Security mint address")) -> None:
    """List snapshots, newest first."""
    from captable_mirror.ownership import OwnershipEngine

    with _cli_errors():
        rows = OwnershipEngine().list_snapshots(mint)
    if not rows:
        typer.echo("No snapshots")
        return
    for row in rows:
        typer.echo(
            f"{row['block_height']:>12}  holders={row['holder_count']:<6} supply={row['total_supply']}  "
            f"{row['reason'] or ''}"
        )


@app.command("snapshot")
def snapshot(
    mint: str = typer.Option(..., help="Security mint address"),
    block_height: int = typer.Option(..., help="Ledger position; nearest earlier snapshot if not exact"),
) -> None:
    """Show a stored snapshot."""
    from captable_mirror.ownership import OwnershipEngine

    with _cli_errors():
        snap = OwnershipEngine().get_snapshot(mint, block_height)
    _echo_json(snap.model_dump(mode="json"))


@app.command("concentration")
def concentration(mint: str = typer.Option(..., help="Security mint address")) -> None:
    """Top-N holdings and Gini coefficient."""
    from captable_mirror.ownership import OwnershipEngine

    with _cli_errors():
        metrics = OwnershipEngine().concentration_metrics(mint)
    _echo_json(metrics.model_dump(mode="json"))


@app.command("transfers")
def transfers(
    mint: str = typer.Option(..., help="Security mint address"),
    limit: int = typer.Option(100, help="Page size"),
    offset: int = typer.Option(0, help="Page offset"),
    from_wallet: Optional[str] = typer.Option(None, help="Only transfers from this wallet"),
    to_wallet: Optional[str] = typer.Option(None, help="Only transfers to this wallet"),
) -> None:
    """Transfer history, newest first."""
    from captable_mirror.ownership import OwnershipEngine

    with _cli_errors():
        page = OwnershipEngine().transfer_history(
            mint, limit=limit, offset=offset, from_wallet=from_wallet, to_wallet=to_wallet
        )
    typer.echo(f"{page.total} transfer(s); showing {len(page.transfers)} from offset {page.offset}")
    for t in page.transfers:
        typer.echo(f"{t.slot:>12}  {t.from_wallet} -> {t.to_wallet}  {t.amount}  {t.transaction_signature}")


@app.command("transfer-volume")
def transfer_volume(
    mint: str = typer.Option(..., help="Security mint address"),
    start: datetime = typer.Option(..., help="Window start (ISO date/time, UTC)"),
    end: datetime = typer.Option(..., help="Window end (ISO date/time, UTC)"),
) -> None:
    """Transfer count and volume within a time window."""
    from captable_mirror.ownership import OwnershipEngine

    with _cli_errors():
        volume = OwnershipEngine().transfer_volume(mint, start, end)
    _echo_json(volume)


@app.command("stock-split")
def stock_split(
    ctx: typer.Context,
    mint: str = typer.Option(..., help="Security mint address"),
    ratio: int = typer.Option(..., help="Split ratio N (N-for-1)"),
    symbol: str = typer.Option(..., help="Post-split symbol"),
    name: str = typer.Option(..., help="Post-split name"),
    executed_by: str = typer.Option(..., help="Authority wallet executing the split"),
    new_mint: Optional[str] = typer.Option(None, help="Mint of the post-split token, if already created"),
    signature: Optional[str] = typer.Option(None, help="Transaction signature of the on-chain split"),
) -> None:
    """Run an N-for-1 stock split into a new security."""
    from captable_mirror.contracts import StockSplitParams
    from captable_mirror.corporate_actions import CorporateActionWorkflow

    params = StockSplitParams(
        token_mint=mint,
        split_ratio=ratio,
        new_symbol=symbol,
        new_name=name,
        executed_by=executed_by,
        new_mint=new_mint,
        transaction_signature=signature,
    )
    with _cli_errors():
        result = CorporateActionWorkflow(program_id=_config(ctx).program_id).execute_stock_split(params)
    _echo_json(result.model_dump(mode="json"))
    if not result.success:
        raise typer.Exit(code=1)


@app.command("resume-split")
def resume_split(action_id: int = typer.Option(..., help="Corporate action id of the failed split")) -> None:
    """Resume a stock split from its last completed step."""
    from captable_mirror.corporate_actions import CorporateActionWorkflow

    with _cli_errors():
        result = CorporateActionWorkflow().resume_stock_split(action_id)
    _echo_json(result.model_dump(mode="json"))
    if not result.success:
        raise typer.Exit(code=1)


@app.command("change-symbol")
def change_symbol(
    mint: str = typer.Option(..., help="Security mint address"),
    symbol: str = typer.Option(..., help="New symbol"),
    name: str = typer.Option(..., help="New name"),
    executed_by: str = typer.Option(..., help="Authority wallet"),
    signature: Optional[str] = typer.Option(None, help="Transaction signature of the on-chain update"),
) -> None:
    """Change a security's symbol and name."""
    from captable_mirror.contracts import SymbolChangeParams
    from captable_mirror.corporate_actions import CorporateActionWorkflow

    params = SymbolChangeParams(
        token_mint=mint, new_symbol=symbol, new_name=name, executed_by=executed_by, transaction_signature=signature
    )
    with _cli_errors():
        result = CorporateActionWorkflow().change_symbol(params)
    _echo_json(result.model_dump(mode="json"))
    if not result.success:
        raise typer.Exit(code=1)
