"""Command-line interface for the swap oracle."""

import asyncio
import json
import logging
import signal
import sys

import click
import structlog
from structlog.stdlib import LoggerFactory

from . import __version__
from .config import config
from .errors import SwapError, error_response
from .orchestrator import create_orchestrator
from .script_builder import build_htlc, hash_preimage

logging.basicConfig(format="%(message)s", stream=sys.stdout, level=config.log_level.upper())

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


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _run(coro_factory):
    """Run a command against a freshly built oracle and report typed errors."""

    async def run():
        orchestrator = await create_orchestrator(enable_health_server=False)
        try:
            return await coro_factory(orchestrator)
        finally:
            await orchestrator.tracker.close()
            await orchestrator.close()

    try:
        return asyncio.run(run())
    except SwapError as e:
        click.echo(json.dumps(error_response(e, config.network_policy)), err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def cli():
    """Swap Oracle - HTLC custody and order reconciliation for BTC swaps."""
    pass


@cli.command()
def serve():
    """Run the oracle: consume order outcomes, redeem and sweep expiries."""
    logger.info("Starting swap oracle", version=__version__, network=config.bitcoin_network)

    async def run():
        orchestrator = await create_orchestrator()

        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info("Received signal, shutting down", signal=sig)
            loop.create_task(orchestrator.stop())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await orchestrator.start()
        except Exception as e:
            logger.error("Fatal error", error=str(e), exc_info=True)
            sys.exit(1)
        finally:
            await orchestrator.close()

    asyncio.run(run())


@cli.command("create-swap")
@click.option("--pubkey", required=True, help="Redeemer compressed public key (hex)")
@click.option("--amount", required=True, type=int, help="Amount to lock in satoshis")
@click.option("--timelock", default=None, type=int, help="Timelock in blocks")
def create_swap(pubkey: str, amount: int, timelock):
    """Generate a swap secret and print the HTLC to fund."""
    _echo_json(_run(lambda o: o.create_swap(pubkey, amount, timelock)))


@cli.command("show-swap")
@click.argument("swap_id")
def show_swap(swap_id: str):
    """Show a swap as the network's disclosure policy allows."""
    _echo_json(_run(lambda o: o.get_swap_view(swap_id)))


@cli.command("build-htlc")
@click.option("--hash", "secret_hash", default=None, help="32-byte SHA-256 hash (hex)")
@click.option("--preimage", default=None, help="Derive the hash from this preimage (hex)")
@click.option("--pubkey", required=True, help="Redeemer compressed public key (hex)")
@click.option("--network", default=config.bitcoin_network, help="Bitcoin network")
def build_htlc_command(secret_hash, preimage, pubkey: str, network: str):
    """Derive an HTLC script and address without touching any state."""
    if bool(secret_hash) == bool(preimage):
        raise click.UsageError("Give exactly one of --hash or --preimage")
    try:
        digest = (
            hash_preimage(bytes.fromhex(preimage)) if preimage else bytes.fromhex(secret_hash)
        )
        descriptor = build_htlc(digest, bytes.fromhex(pubkey), network)
    except ValueError:
        raise click.BadParameter("hash, preimage and pubkey must be hex") from None
    except SwapError as e:
        raise click.ClickException(e.message) from None

    _echo_json({"address": descriptor.address, "script": descriptor.script_hex, "hash": digest.hex()})


@cli.command()
@click.argument("swap_id")
@click.option("--destination", default=None, help="Address receiving the funds")
def redeem(swap_id: str, destination):
    """Redeem the HTLC of a completed swap."""
    result = _run(lambda o: o.start_redemption(swap_id, destination))
    _echo_json(result.model_dump(by_alias=True))


@cli.command("delete-swap")
@click.argument("swap_id")
@click.option("--force", is_flag=True, help="Delete immediately, without a recovery window")
@click.confirmation_option(prompt="Delete this swap secret?")
def delete_swap(swap_id: str, force: bool):
    """Schedule a swap secret for deletion."""
    deletion_date = _run(lambda o: o.vault.delete(swap_id, force=force))
    click.echo(f"Deletion scheduled for {deletion_date}")


@cli.command("restore-swap")
@click.argument("swap_id")
def restore_swap(swap_id: str):
    """Cancel a scheduled deletion."""
    _run(lambda o: o.vault.restore(swap_id))
    click.echo(f"Restored {swap_id}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
