# Simple CLI for the brokerage back office
import asyncio
import sys
from datetime import timezone

import click

from app.main import ApplicationOrchestrator


async def _with_app(action):
    async with ApplicationOrchestrator() as app:
        return await action(app)


@click.group()
def cli():
    """Brokerage back-office CLI"""
    pass


@cli.command("init-db")
def init_db():
    """Create the account store schema"""
    click.echo("Initializing database...")

    async def _init(app):
        # startup already created the schema
        return None

    asyncio.run(_with_app(_init))
    click.echo("Database ready")


@cli.command("audit-ledger")
@click.argument("account_id", required=False)
def audit_ledger(account_id):
    """Recompute balances from the ledger and report discrepancies"""

    async def _audit(app):
        return await app.container.account_service().audit_ledger(account_id)

    report = asyncio.run(_with_app(_audit))
    click.echo(f"Accounts checked: {report.accounts_checked}")
    if report.ok:
        click.echo("Ledger consistent")
        return
    for d in report.discrepancies:
        click.echo(f"{d.account_id} {d.check}: expected={d.expected} actual={d.actual}"
                   + (f" ({d.detail})" if d.detail else ""))
    sys.exit(1)


@cli.command("expire-orders")
@click.option("--cutoff", type=click.DateTime(), default=None,
              help="Expire open day orders created before this UTC time (default: start of today)")
def expire_orders(cutoff):
    """Expire open day orders"""
    if cutoff is not None and cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)

    async def _expire(app):
        return await app.container.trading_engine_service().expire_day_orders(cutoff)

    expired = asyncio.run(_with_app(_expire))
    click.echo(f"Expired {len(expired)} order(s)")


if __name__ == "__main__":
    cli()
