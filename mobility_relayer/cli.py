"""
CLI entry point for Mobility Relayer.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from .bitcoin import BitcoinApiClient, sats_to_btc
from .config import get_settings
from .log import configure_logging
from .relayer import Relayer

app = typer.Typer(
    name="mobility-relayer",
    help="Mobility Bitcoin/Sui collateral relayer",
    add_completion=False,
)


@app.callback()
def setup(
    env_file: Optional[Path] = typer.Option(
        None,
        "--env-file",
        "-e",
        help="Path to .env configuration file",
    ),
) -> None:
    """Load configuration and set up logging."""
    if env_file:
        load_dotenv(env_file, override=True)
        get_settings.cache_clear()
    settings = get_settings()
    configure_logging(json_logs=settings.json_logs, level=settings.log_level)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (default: HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default: PORT)"),
) -> None:
    """
    Serve the HTTP API together with the ingest, payout and health loops.
    """
    import uvicorn

    from .main import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def run(
    once: bool = typer.Option(
        False,
        "--once",
        help="Run one ingest and payout cycle and exit",
    ),
) -> None:
    """
    Run the relayer loops without the HTTP API.
    """
    relayer = Relayer(get_settings())

    async def _run_once() -> None:
        try:
            await relayer.prepare()
            result = await relayer.run_once()
        finally:
            await relayer.close()
        typer.echo(f"Events fetched: {result.events}")
        typer.echo(f"Payouts completed: {result.payouts_completed}")

    async def _run_forever() -> None:
        await relayer.start()
        try:
            await asyncio.Event().wait()
        finally:
            await relayer.stop()

    if once:
        typer.echo("Running in single-shot mode...")
        asyncio.run(_run_once())
        return

    typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
    try:
        asyncio.run(_run_forever())
    except KeyboardInterrupt:
        typer.echo("\nStopping relayer...")


@app.command("check-tx")
def check_tx(
    txid: str = typer.Argument(..., help="Bitcoin transaction id"),
    confirmations: Optional[int] = typer.Option(
        None,
        "--confirmations",
        "-c",
        help="Minimum confirmations required (default: MIN_CONFIRMATIONS)",
    ),
    address: Optional[str] = typer.Option(
        None,
        "--address",
        "-a",
        help="Only count outputs paying this address",
    ),
) -> None:
    """
    Verify a deposit transaction without attesting it.
    """
    settings = get_settings()
    required = confirmations or settings.min_confirmations
    client = BitcoinApiClient(settings.resolved_bitcoin_api_url)

    async def _check():
        try:
            return await client.verify_transaction(txid, required, address)
        finally:
            await client.close()

    result = asyncio.run(_check())

    typer.echo(f"TXID: {txid}")
    typer.echo(f"Required confirmations: {required}")
    if not result.verified:
        typer.echo(f"Not verified: {result.error}")
        raise typer.Exit(code=1)

    typer.echo(f"Confirmations: {result.confirmations}")
    typer.echo(f"Block: {result.block_height}")
    typer.echo(f"Amount: {result.amount_sats} sats ({sats_to_btc(result.amount_sats)} BTC)")


@app.command()
def balance() -> None:
    """Show the relayer wallet address, confirmed balance and fee rate."""
    relayer = Relayer(get_settings())
    if relayer.wallet is None:
        typer.echo("MASTER_BITCOIN_PRIVATE_KEY is not set.")
        raise typer.Exit(code=1)

    async def _balance():
        try:
            utxos = await relayer.wallet.get_utxos(force_refresh=True)
            fee_rate = await relayer.wallet.estimate_fee_rate()
            return utxos, fee_rate
        finally:
            await relayer.close()

    utxos, fee_rate = asyncio.run(_balance())
    sats = sum(u.value for u in utxos)
    typer.echo(f"Address: {relayer.wallet.address}")
    typer.echo(f"Balance: {sats} sats ({sats_to_btc(sats)} BTC)")
    typer.echo(f"UTXOs: {len(utxos)}")
    typer.echo(f"Fee rate: {fee_rate} sat/vB")


@app.command("reset-cursor")
def reset_cursor() -> None:
    """Forget the withdrawal event cursor; ingestion restarts from the oldest event."""
    relayer = Relayer(get_settings())

    async def _reset() -> bool:
        try:
            return await relayer.listener.reset_cursor()
        finally:
            await relayer.close()

    if asyncio.run(_reset()):
        typer.echo("Event cursor deleted.")
    else:
        typer.echo("No event cursor stored.")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from mobility_relayer import __version__
    typer.echo(f"mobility-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
