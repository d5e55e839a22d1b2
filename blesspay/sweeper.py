"""
Expiry sweep for intents the provider never answered.

Runs inside the API process (see `run_expiry_sweeper`) or once from cron:

    blesspay-sweep --ttl-seconds 900 --limit 200
"""
import asyncio
from datetime import timedelta
from typing import Optional

import structlog
import typer
from starlette.concurrency import run_in_threadpool

from blesspay.dependencies import get_reconciler
from blesspay.logging_config import setup_logging
from blesspay.reconciliation import ReconciliationEngine

logger = structlog.get_logger(__name__)

cli = typer.Typer(
    name="blesspay-sweep",
    help="Expire payment intents that never received a provider outcome.",
    add_completion=False,
)


async def run_expiry_sweeper(reconciler: ReconciliationEngine, interval: float) -> None:
    logger.info("expiry_sweeper_started", interval=interval)
    while True:
        try:
            await run_in_threadpool(reconciler.expire_stale)
        except Exception:
            # Keep sweeping; the next pass sees the same intents again
            logger.exception("expiry_sweep_failed")
        await asyncio.sleep(interval)


@cli.command()
def sweep(
    ttl_seconds: Optional[int] = typer.Option(
        None, help="Age after which a pending intent expires (default: PENDING_TTL_SECONDS)."
    ),
    limit: int = typer.Option(100, help="Maximum intents to process."),
    requery: bool = typer.Option(True, "--requery/--no-requery", help="Ask the provider before expiring."),
) -> None:
    setup_logging()
    ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
    expired = get_reconciler().expire_stale(limit=limit, requery=requery, ttl=ttl)
    typer.echo(f"Expired {expired} intent(s).")


if __name__ == "__main__":
    cli()
