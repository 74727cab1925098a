"""Command-line interface for the HTLC resolver."""

import asyncio
import json
import signal
import sys

import click
import structlog
from structlog.stdlib import LoggerFactory

from . import __version__
from .clients import FailoverUtxoClient, RelayerEscrowClient
from .config import config
from .database import SqlSwapStore
from .engine import SwapEngine
from .errors import SwapError
from .health import HealthServer
from .notifiers import NotificationManager
from .signer import KeySigner

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


async def build_engine() -> SwapEngine:
    """Engine wired to the configured database, Esplora endpoints and relayer."""
    if not config.signer_private_keys:
        raise click.ClickException("SIGNER_PRIVATE_KEYS is not configured")

    store = SqlSwapStore(config.database_url)
    await store.init()
    return SwapEngine(
        account=RelayerEscrowClient(config.relayer_api_url),
        utxo=FailoverUtxoClient.from_config(config),
        signer=KeySigner(config.signer_private_keys, config.network),
        store=store,
        notifier=NotificationManager(config),
    )


def run_with_engine(action):
    """Run `action(engine)` on a fresh engine and print its result as JSON."""

    async def run():
        engine = await build_engine()
        try:
            result = await action(engine)
        except SwapError as e:
            click.echo(json.dumps(e.to_dict(), indent=2), err=True)
            sys.exit(1)
        finally:
            await engine.close()
        if result is not None:
            click.echo(result.model_dump_json(indent=2))

    asyncio.run(run())


@click.group()
@click.version_option(version=__version__)
def cli():
    """HTLC resolver - atomic swaps between an account chain and a UTXO chain."""
    pass


@cli.command()
@click.option("--maker-asset", required=True, help="Asset locked on the source chain")
@click.option("--making-amount", required=True, type=int, help="Source amount in base units")
@click.option("--taking-amount", required=True, type=int, help="Destination amount in satoshis")
@click.option("--maker-address", required=True, help="Maker's source-chain account")
@click.option("--receiver-address", required=True, help="Maker's UTXO payout address")
@click.option("--maker-pubkey", required=True, help="Maker's compressed pubkey (hex)")
@click.option("--resolver-pubkey", required=True, help="Resolver's compressed pubkey (hex)")
@click.option("--resolver-address", default="", help="Resolver's source-chain account")
@click.option("--timelock", type=int, default=None, help="Absolute HTLC expiry (unix seconds)")
@click.option("--secret", default=None, help="Use this 32-byte secret (hex)")
@click.option("--parts", default=1, type=int, help="Secrets to commit for partial fills")
def initiate(parts: int, **kwargs):
    """Create a swap and print its order id, hashlock and HTLC address."""
    params = {**kwargs, "parts": parts, "allow_multiple_fills": parts > 1}
    run_with_engine(lambda engine: engine.initiate_swap(params))


@cli.command()
@click.argument("order_id")
@click.option("--fill-amount", type=int, default=None, help="Source amount for a partial fill")
def fund(order_id: str, fill_amount: int):
    """Deploy the source escrow and fund the destination HTLC."""
    run_with_engine(lambda engine: engine.fund(order_id, fill_amount))


@cli.command()
@click.argument("order_id")
@click.option("--secret", required=True, help="Revealed secret (hex)")
@click.option("--index", "idx", type=int, default=None, help="Leaf index for a partial fill")
def claim(order_id: str, secret: str, idx: int):
    """Withdraw both legs with the secret."""
    run_with_engine(lambda engine: engine.claim(order_id, secret, idx=idx))


@cli.command()
@click.argument("order_id")
def refund(order_id: str):
    """Cancel the locked legs of an expired swap."""
    run_with_engine(lambda engine: engine.refund(order_id))


@cli.command()
@click.argument("order_id")
def status(order_id: str):
    """Show the stored state of one swap."""
    run_with_engine(lambda engine: engine.get_status(order_id))


@cli.command()
@click.option("--health-port", default=config.health_port, help="Port for the health server")
def watch(health_port: int):
    """Watch every in-flight swap until interrupted."""
    logger.info("Starting HTLC resolver", version=__version__)

    async def run():
        engine = await build_engine()
        health = HealthServer(engine, health_port)
        stop = asyncio.Event()

        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info("Received signal, shutting down", signal=sig)
            stop.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await health.start()
            watching = await engine.resume()
            health.update_status(watching=watching, network=config.network)
            await stop.wait()
        except Exception as e:
            logger.error("Fatal error", error=str(e), exc_info=True)
            sys.exit(1)
        finally:
            await health.stop()
            await engine.close()

    asyncio.run(run())


@cli.command()
@click.option("--status", "statuses", multiple=True, help="Only show swaps in this status")
def list_swaps(statuses: tuple):
    """List stored swaps."""

    async def run():
        engine = await build_engine()
        try:
            swaps = await engine.list_swaps(list(statuses) or None)
        finally:
            await engine.close()

        if not swaps:
            click.echo("No swaps found")
            return

        click.echo(f"{len(swaps)} swaps:\n")
        for swap in swaps:
            click.echo(f"Order: {swap.order_id}")
            click.echo(f"  Status: {swap.status.value}")
            click.echo(f"  Amount: {swap.order.making_amount} {swap.order.maker_asset}")
            click.echo(f"  Expires: {swap.expires_at.isoformat()}")
            if swap.dst and swap.dst.address:
                click.echo(f"  HTLC: {swap.dst.address}")
            if swap.last_error:
                click.echo(f"  Error: {swap.last_error.get('message')}")
            click.echo()

    asyncio.run(run())


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
