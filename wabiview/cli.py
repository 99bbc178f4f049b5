"""Command-line interface for the coinjoin monitor."""

import asyncio
import logging
import signal
import sys

import click
import structlog
from structlog.stdlib import LoggerFactory

from . import __version__
from .bitcoin_rpc import BitcoinRpc
from .coinjoin_service import CoinjoinService
from .config import config
from .coordinator_client import CoordinatorClient
from .database import Database
from .electrs import ElectrsClient
from .health import HealthServer
from .heuristics import from_esplora, largest_equal_output_group, looks_like_coinjoin
from .orchestrator import MonitorOrchestrator
from .poller import CoordinatorPoller
from .registry import ManualCoordinatorRegistry
from .round_store import RoundStore
from .scanner import CoinjoinScanner

logging.basicConfig(format="%(message)s", level=config.log_level)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@click.group()
@click.version_option(version=__version__)
def cli():
    """WabiView - WabiSabi coordinator and coinjoin monitor."""
    pass


@cli.command()
@click.option(
    "--scan-interval",
    default=config.scan_interval,
    type=float,
    help="Seconds between coinjoin scans",
)
@click.option(
    "--no-health-server",
    is_flag=True,
    help="Don't expose the health and JSON endpoints",
)
def run(scan_interval: float, no_health_server: bool):
    """Poll coordinators and detect coinjoins until interrupted."""
    logger.info("Starting coinjoin monitor", version=__version__)

    async def main_loop():
        db = Database()
        await db.init()

        client = CoordinatorClient()
        rpc = BitcoinRpc()
        rounds = RoundStore(db)
        service = CoinjoinService(db, rpc, rounds=rounds)

        poller = CoordinatorPoller(db, client, ManualCoordinatorRegistry(), rounds)
        scanner = CoinjoinScanner(rpc, service, rounds, scan_interval=scan_interval)
        health_server = None
        if config.enable_health_server and not no_health_server:
            health_server = HealthServer(
                service, host=config.health_host, port=config.health_port
            )

        orchestrator = MonitorOrchestrator(poller, scanner, health_server)

        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info("Received signal, shutting down", signal=sig.name)
            loop.create_task(orchestrator.stop())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await orchestrator.start()
        except Exception as e:
            logger.error("Fatal error", error=str(e), exc_info=True)
            sys.exit(1)
        finally:
            await client.close()
            await rpc.close()
            await db.close()

    asyncio.run(main_loop())


@cli.command("init-db")
def init_db():
    """Create the schema and seed the known coordinators."""

    async def main_loop():
        db = Database()
        await db.init()
        added = await db.ensure_coordinators(
            ManualCoordinatorRegistry().get_coordinators()
        )
        click.echo(f"Database ready, {added} coordinator(s) added")
        await db.close()

    asyncio.run(main_loop())


@cli.command()
def coordinators():
    """Show each coordinator's health and activity."""

    async def main_loop():
        db = Database()
        await db.init()
        service = CoinjoinService(db, BitcoinRpc())

        overview = await service.get_coordinator_overview()
        if not overview:
            click.echo("No coordinators stored yet, run init-db first")

        for card in overview:
            coordinator = card.coordinator
            state = "online" if coordinator.is_online else "offline"
            click.echo(f"{coordinator.name} ({coordinator.url}) - {state}")
            click.echo(f"  Last seen: {coordinator.last_seen or 'never'}")
            if coordinator.failure_count:
                click.echo(f"  Consecutive failures: {coordinator.failure_count}")
            if coordinator.fee_rate is not None:
                click.echo(f"  Coordination fee rate: {coordinator.fee_rate}")
            click.echo(
                f"  Coinjoins: {card.total_coinjoins} total, "
                f"{card.last_24h_coinjoins} in the last 24h"
            )
            if card.current_round:
                round_ = card.current_round
                click.echo(
                    f"  Current round: {round_.round_id} "
                    f"({round_.phase.display_name}, {round_.input_count} inputs)"
                )
            click.echo()

        await service.rpc.close()
        await db.close()

    asyncio.run(main_loop())


@cli.command()
@click.option("--page", default=1, help="Page number")
@click.option("--page-size", default=20, help="Coinjoins per page")
@click.option("--coordinator", "coordinator_name", help="Coordinator name")
@click.option(
    "--status",
    type=click.Choice(["confirmed", "unconfirmed"], case_sensitive=False),
    help="Only confirmed or unconfirmed coinjoins",
)
@click.option("--search", help="Part of a txid")
def coinjoins(page, page_size, coordinator_name, status, search):
    """List recorded coinjoins, newest first."""

    async def main_loop():
        db = Database()
        await db.init()
        service = CoinjoinService(db, BitcoinRpc())

        names = {c.id: c.name for c in await db.list_coordinators()}
        coordinator_id = None
        if coordinator_name:
            matches = [i for i, n in names.items() if n.lower() == coordinator_name.lower()]
            if not matches:
                click.echo(f"Unknown coordinator: {coordinator_name}")
                await service.rpc.close()
                await db.close()
                return
            coordinator_id = matches[0]

        result = await service.get_filtered(
            page=page,
            page_size=page_size,
            coordinator_id=coordinator_id,
            status=status,
            search=search,
        )

        if not result.items:
            click.echo("No coinjoins found")
        else:
            click.echo(
                f"Page {result.page} of {result.total_pages} "
                f"({result.total_count} coinjoins)\n"
            )
        for coinjoin in result.items:
            click.echo(f"{coinjoin.txid}")
            click.echo(f"  Coordinator: {names.get(coinjoin.coordinator_id, 'unknown')}")
            click.echo(
                f"  Inputs/outputs: {coinjoin.input_count}/{coinjoin.output_count}"
            )
            if coinjoin.is_confirmed:
                click.echo(
                    f"  Block: {coinjoin.block_height} "
                    f"({coinjoin.confirmations} confirmations)"
                )
            else:
                click.echo("  Unconfirmed")
            click.echo(f"  First seen: {coinjoin.first_seen}")
            click.echo()

        await service.rpc.close()
        await db.close()

    asyncio.run(main_loop())


@cli.command()
def stats():
    """Show coinjoin totals for the last 24 hours."""

    async def main_loop():
        db = Database()
        await db.init()
        service = CoinjoinService(db, BitcoinRpc())

        result = await service.get_stats()
        click.echo(f"Total coinjoins: {result.total_coinjoins}")
        click.echo(f"Last 24h: {result.last_24h_count}")
        click.echo(f"Volume 24h: {result.volume_24h_btc} BTC")

        await service.rpc.close()
        await db.close()

    asyncio.run(main_loop())


@cli.command()
@click.option("--txid", required=True, help="Transaction ID to check")
def check(txid: str):
    """Check if a specific transaction looks like a coinjoin."""

    async def main_loop():
        rpc = BitcoinRpc()
        electrs = ElectrsClient()
        try:
            tx = await rpc.get_raw_transaction(txid, True)
            if not tx:
                esplora_tx = await electrs.get_transaction(txid)
                tx = from_esplora(esplora_tx) if esplora_tx else None
        finally:
            await rpc.close()
            await electrs.close()

        if not tx:
            click.echo(f"✗ Transaction {txid} not found")
            return

        if looks_like_coinjoin(tx):
            click.echo(f"✓ Transaction {txid} looks like a coinjoin!")
        else:
            click.echo(f"✗ Transaction {txid} doesn't look like a coinjoin")
        click.echo(f"  Inputs: {len(tx.get('vin', []))}")
        click.echo(f"  Outputs: {len(tx.get('vout', []))}")
        click.echo(f"  Largest equal-value group: {largest_equal_output_group(tx)}")

    asyncio.run(main_loop())


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
