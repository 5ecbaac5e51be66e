"""Typer-based CLI for market data lookups and stream tailing."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .errors import BnlinkError

if TYPE_CHECKING:
    from .exchanges.binance import BinanceClient
    from .settings import Settings


# Import with local function to avoid circular imports
def _load_settings(config_path: Optional[Path] = None) -> "Settings":
    from .config import load_settings
    return load_settings(config_path)


def _create_client(settings: "Settings") -> "BinanceClient":
    from .exchanges.factory import create_client_from_settings
    return create_client_from_settings(settings)


def _configure_logging(log_dir: Path | None = None) -> None:
    from .logging import configure_logging
    return configure_logging(log_dir)


app = typer.Typer(help="Binance connectivity CLI")
console = Console()
logger = logging.getLogger(__name__)


def run_cli(argv: list[str] | None = None) -> None:
    """Run CLI with optional argv parameter."""
    app(argv)


def init_client(config_path: Optional[Path] = None, market: Optional[str] = None) -> "BinanceClient":
    """Load settings and build a client, optionally overriding the market."""
    settings = _load_settings(config_path)
    if market:
        settings = settings.model_copy(update={"market": market})
    log_dir = os.environ.get("BNLINK_LOG_DIR")
    _configure_logging(Path(log_dir) if log_dir else None)
    return _create_client(settings)


def _fail(action: str, exc: Exception) -> NoReturn:
    logger.error("Failed to %s: %s", action, exc)
    console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(1)


@app.command()
def klines(
    symbol: str = typer.Argument(..., help="Trading symbol, e.g. BTCUSDT"),
    interval: str = typer.Argument(..., help="Kline interval, e.g. 1h"),
    start: str = typer.Option(..., help="UTC start time, 'YYYY-MM-DD HH:MM:SS'"),
    end: Optional[str] = typer.Option(None, help="UTC end time, defaults to now"),
    market: Optional[str] = typer.Option(None, help="Market override (spot/swap)"),
    format_type: str = typer.Option("table", "--format", help="Output format (table/json/csv)"),
    config: Optional[Path] = typer.Option(None, help="Path to config file"),
) -> None:
    """Fetch historical klines."""
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(f"Fetching {symbol} {interval} klines...", total=None)
            records = asyncio.run(_klines_async(symbol, interval, start, end, market, config))
    except BnlinkError as e:
        _fail("fetch klines", e)

    if not records:
        console.print("[yellow]No klines found[/yellow]")
        return

    if format_type == "json":
        console.print_json(json.dumps([
            {
                "open_time": r.open_time,
                "close_time": r.close_time,
                "open": str(r.open),
                "high": str(r.high),
                "low": str(r.low),
                "close": str(r.close),
                "volume": str(r.volume),
            }
            for r in records
        ]))
    elif format_type == "csv":
        console.print("open_time,open,high,low,close,volume,close_time")
        for r in records:
            console.print(f"{r.open_time},{r.open},{r.high},{r.low},{r.close},{r.volume},{r.close_time}")
    else:
        table = Table(title=f"{symbol.upper()} {interval}")
        table.add_column("Open time", style="dim")
        table.add_column("Open", style="cyan")
        table.add_column("High", style="green")
        table.add_column("Low", style="red")
        table.add_column("Close", style="cyan")
        table.add_column("Volume", style="magenta")
        for r in records:
            table.add_row(str(r.open_time), str(r.open), str(r.high), str(r.low), str(r.close), str(r.volume))
        console.print(table)

    console.print(f"\n[bold]Total records:[/bold] {len(records)}")


async def _klines_async(symbol, interval, start, end, market, config):
    client = init_client(config, market)
    async with client:
        return await client.history_klines(symbol, interval, start, end)


@app.command()
def price(
    symbol: str = typer.Argument(..., help="Trading symbol"),
    market: Optional[str] = typer.Option(None, help="Market override (spot/swap)"),
    config: Optional[Path] = typer.Option(None, help="Path to config file"),
) -> None:
    """Show the last traded price of a symbol."""
    try:
        update = asyncio.run(_price_async(symbol, market, config))
    except BnlinkError as e:
        _fail("fetch price", e)
    console.print(f"[green]{update.symbol}[/green] {update.price}")


async def _price_async(symbol, market, config):
    client = init_client(config, market)
    async with client:
        return await client.get_price(symbol)


@app.command("exchange-info")
def exchange_info(
    symbol: Optional[str] = typer.Option(None, help="Only show this symbol"),
    market: Optional[str] = typer.Option(None, help="Market override (spot/swap)"),
    config: Optional[Path] = typer.Option(None, help="Path to config file"),
) -> None:
    """List tradable symbols and their status."""
    try:
        info = asyncio.run(_exchange_info_async(market, config))
    except BnlinkError as e:
        _fail("fetch exchange info", e)

    symbols = info.get("symbols", [])
    if symbol:
        wanted = symbol.upper()
        symbols = [s for s in symbols if s.get("symbol") == wanted]
    if not symbols:
        console.print("[yellow]No symbols found[/yellow]")
        return

    table = Table(title="Exchange info")
    table.add_column("Symbol", style="cyan")
    table.add_column("Status", style="yellow")
    table.add_column("Base", style="green")
    table.add_column("Quote", style="green")
    for s in symbols:
        table.add_row(s.get("symbol", ""), s.get("status", ""), s.get("baseAsset", ""), s.get("quoteAsset", ""))
    console.print(table)


async def _exchange_info_async(market, config):
    client = init_client(config, market)
    async with client:
        return await client.get_exchange_info()


@app.command()
def stream(
    symbols: list[str] = typer.Argument(..., help="Symbols to subscribe"),
    channel: str = typer.Option("aggTrade", help="Stream channel, e.g. aggTrade or kline_1m"),
    count: int = typer.Option(10, help="Stop after this many events (0 = run until interrupted)"),
    market: Optional[str] = typer.Option(None, help="Market override (spot/swap)"),
    config: Optional[Path] = typer.Option(None, help="Path to config file"),
) -> None:
    """Subscribe to market streams and print events as they arrive."""
    try:
        asyncio.run(_stream_async(symbols, channel, count, market, config))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
    except BnlinkError as e:
        _fail("stream events", e)


async def _stream_async(symbols, channel, count, market, config) -> None:
    client = init_client(config, market)
    async with client:
        manager = await client.generate_websocket("market")
        added = await client.subscribe_websocket(manager, symbols, channel)
        console.print(f"Subscribed to [cyan]{', '.join(added)}[/cyan]")
        received = 0
        async for event in manager.events():
            console.print(f"[dim]{event.event_time}[/dim] [cyan]{event.stream}[/cyan] {json.dumps(event.data)}")
            received += 1
            if count and received >= count:
                break


def main():
    """CLI main entry point."""
    app()


if __name__ == "__main__":
    main()
