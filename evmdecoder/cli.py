"""Click CLI: init-db, ingest, run, drain, decode, serve, backfill-contracts, stats."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path

import click

from evmdecoder.config import get_settings


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # one line per signature lookup is too chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--db", "db_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="DuckDB file (defaults to DUCKDB_PATH)")
@click.option("--log-level", default=None, help="Overrides LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, log_level: str | None):
    """evmdecoder - decode embedded EVM transactions into queryable tables."""
    settings = get_settings()
    _setup_logging(log_level or settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


def _connect(ctx: click.Context):
    from evmdecoder.storage.database import get_connection

    return get_connection(ctx.obj.get("db_path"))


def _resolver(offline: bool):
    from evmdecoder.labels.signatures import SignatureResolver

    return SignatureResolver(enabled=False) if offline else SignatureResolver()


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create tables and the pending view."""
    conn = _connect(ctx)
    click.echo(f"Database ready at {ctx.obj.get('db_path') or get_settings().duckdb_path}")
    conn.close()


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def ingest(ctx: click.Context, path: Path):
    """Load raw transactions from a JSON-lines file (dev and test data)."""
    from evmdecoder.models.schema import PendingTransaction
    from evmdecoder.storage.database import insert_raw_transactions

    rows = []
    with path.open() as f:
        for line in f:
            if line.strip():
                rows.append(PendingTransaction.model_validate(json.loads(line)))

    conn = _connect(ctx)
    n = insert_raw_transactions(conn, rows)
    click.echo(f"Inserted {n} raw transactions from {path.name}.")
    conn.close()


@cli.command()
@click.option("--batch-size", default=None, type=int, help="Overrides BATCH_SIZE")
@click.option("--poll-interval", default=None, type=float, help="Overrides POLL_INTERVAL")
@click.option("--api/--no-api", default=False, help="Also serve the HTTP priority surface")
@click.option("--offline", is_flag=True, help="Skip remote signature lookups")
@click.pass_context
def run(ctx: click.Context, batch_size: int | None, poll_interval: float | None, api: bool, offline: bool):
    """Run the continuous batch decoder until interrupted."""
    from evmdecoder.pipeline.scheduler import BatchScheduler

    settings = get_settings()
    conn = _connect(ctx)
    resolver = _resolver(offline)
    scheduler = BatchScheduler(conn.cursor(), resolver, batch_size=batch_size, poll_interval=poll_interval)

    if api:
        import uvicorn
        from evmdecoder.api.server import create_app
        from evmdecoder.pipeline.priority import PriorityChannel, PriorityDecoder

        decoder = PriorityDecoder(conn.cursor(), resolver)
        app = create_app(decoder, PriorityChannel(), scheduler=scheduler)
        uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
        conn.close()
        return

    async def _run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)
        await scheduler.run()

    asyncio.run(_run())
    conn.close()


@cli.command()
@click.option("--batch-size", default=None, type=int)
@click.option("--offline", is_flag=True, help="Skip remote signature lookups")
@click.pass_context
def drain(ctx: click.Context, batch_size: int | None, offline: bool):
    """Decode everything currently pending, then exit."""
    from evmdecoder.pipeline.scheduler import BatchScheduler
    from evmdecoder.storage.database import count_pending

    conn = _connect(ctx)
    click.echo(f"{count_pending(conn)} transactions pending.")
    scheduler = BatchScheduler(conn, _resolver(offline), batch_size=batch_size)
    total = asyncio.run(scheduler.drain())
    click.echo(f"Processed {total} transactions, {count_pending(conn)} still pending.")
    conn.close()


@cli.command()
@click.argument("tx_id")
@click.option("--offline", is_flag=True, help="Skip remote signature lookups")
@click.pass_context
def decode(ctx: click.Context, tx_id: str, offline: bool):
    """Decode one transaction now, out of band of the batch loop."""
    from evmdecoder.pipeline.priority import PriorityDecoder

    conn = _connect(ctx)
    decoder = PriorityDecoder(conn, _resolver(offline))
    try:
        outcome = asyncio.run(decoder.decode_one(tx_id))
    except asyncio.TimeoutError:
        conn.close()
        raise click.ClickException(f"Decoding {tx_id} timed out after {decoder.timeout}s")

    click.echo(f"{tx_id}: {outcome.message} ({outcome.status.value})")
    if outcome.transaction is not None:
        click.echo(json.dumps(outcome.transaction.model_dump(mode="json"), indent=2))
    conn.close()
    if not outcome.success:
        ctx.exit(1)


@cli.command()
@click.option("--host", default=None, help="Overrides API_HOST")
@click.option("--port", default=None, type=int, help="Overrides API_PORT")
@click.option("--offline", is_flag=True, help="Skip remote signature lookups")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, offline: bool):
    """Serve the HTTP priority surface and its listener, without the batch loop."""
    import uvicorn
    from evmdecoder.api.server import create_app
    from evmdecoder.pipeline.priority import PriorityChannel, PriorityDecoder

    settings = get_settings()
    conn = _connect(ctx)
    decoder = PriorityDecoder(conn.cursor(), _resolver(offline))
    app = create_app(decoder, PriorityChannel())
    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    conn.close()


@cli.command("backfill-contracts")
@click.pass_context
def backfill_contracts_cmd(ctx: click.Context):
    """Record contracts for decoded creation transactions that lack one."""
    from evmdecoder.contracts.deployment import backfill_contracts

    conn = _connect(ctx)
    counts = backfill_contracts(conn)
    for label, count in counts.items():
        click.echo(f"  {label}: {count}")
    conn.close()


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show row counts for the pending set and output tables."""
    from evmdecoder.storage.database import get_tokens, table_counts

    conn = _connect(ctx)
    for table, count in table_counts(conn).items():
        click.echo(f"  {table}: {count}")

    tokens = get_tokens(conn)
    if not tokens.empty:
        click.echo("\n--- Tokens by standard ---")
        click.echo(tokens.groupby("type").size().to_string())
    conn.close()


if __name__ == "__main__":
    cli()
