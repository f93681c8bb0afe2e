from __future__ import annotations

import time
from datetime import UTC, datetime

import typer
from rich.console import Console
from rich.table import Table

from binance_volume_collector.core.config import Settings
from binance_volume_collector.core.enums import ConnectionEvent, QuerySource
from binance_volume_collector.core.errors import PersistenceError
from binance_volume_collector.core.logging import configure_logging
from binance_volume_collector.core.time_utils import now_ms, parse_time_ms
from binance_volume_collector.pipeline.orchestrator import VolumeCollectorPipeline
from binance_volume_collector.pipeline.status import PipelineStatus

app = typer.Typer(help="Binance buy/sell volume collector CLI")
console = Console()


def _parse_time(value: str) -> int:
    try:
        return parse_time_ms(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Expected epoch milliseconds or an ISO datetime, got {value!r}") from exc


def _format_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=UTC).isoformat(timespec="milliseconds")


def _print_status(status: PipelineStatus) -> None:
    table = Table(title=f"Collector status (timeframe={status.timeframe or '-'})")
    table.add_column("symbol")
    table.add_column("state")
    table.add_column("reconnects", justify="right")
    table.add_column("buffered", justify="right")
    table.add_column("last connected")
    table.add_column("last error")
    for symbol, symbol_status in sorted(status.per_symbol.items()):
        table.add_row(
            symbol,
            str(symbol_status.state),
            str(symbol_status.reconnect_count),
            str(status.buffer_occupancy.get(symbol, 0)),
            _format_ms(symbol_status.last_connected),
            symbol_status.last_error or "",
        )
    console.print(table)
    if status.message:
        console.print(f"[yellow]{status.message}[/yellow]")


@app.command("collect")
def collect(
    timeframe: str | None = typer.Option(default=None, help="Bucket width, e.g. 1s, 1m, 1h"),
    status_seconds: int = typer.Option(default=30, min=1, help="Interval between status tables"),
) -> None:
    """
    Stream every configured symbol and persist volume buckets until interrupted.
    """
    settings = Settings()
    configure_logging(settings.log_level)

    pipeline = VolumeCollectorPipeline(settings)
    try:
        pipeline.start(timeframe)
        console.print(
            f"Collecting {', '.join(settings.symbols)} into [bold]{settings.db_path}[/bold] (Ctrl+C to stop)"
        )
        while True:
            time.sleep(status_seconds)
            _print_status(pipeline.status())
    except KeyboardInterrupt:
        console.print("Stopping collector...")
    finally:
        pipeline.close()


@app.command("query")
def query(
    symbol: str = typer.Argument(help="Symbol, e.g. btcusdt"),
    start: str = typer.Option(help="Range start (epoch ms or ISO datetime)"),
    end: str | None = typer.Option(default=None, help="Range end, defaults to now"),
    timeframe: str = typer.Option(default="1m", help="Output bucket width"),
    source: QuerySource = typer.Option(default=QuerySource.BUCKETS, help="Stored buckets or raw trades"),
    ohlc: bool = typer.Option(default=False, help="Print OHLC candles (raw trades only)"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    start_ms = _parse_time(start)
    end_ms = _parse_time(end) if end is not None else now_ms()

    pipeline = VolumeCollectorPipeline(settings)
    try:
        if ohlc:
            candle_result = pipeline.query_candles(symbol, start_ms, end_ms, timeframe)
            if not candle_result.success:
                console.print(f"[red]Query failed:[/red] {candle_result.message}")
                raise typer.Exit(code=1)
            table = Table(title=f"{symbol.lower()} {timeframe} candles")
            for column in ("time", "open", "high", "low", "close", "volume", "buy", "sell"):
                table.add_column(column, justify="left" if column == "time" else "right")
            for candle in candle_result.data or []:
                table.add_row(
                    _format_ms(candle.time),
                    f"{candle.open:.8g}",
                    f"{candle.high:.8g}",
                    f"{candle.low:.8g}",
                    f"{candle.close:.8g}",
                    f"{candle.total_volume:.2f}",
                    f"{candle.buy_volume:.2f}",
                    f"{candle.sell_volume:.2f}",
                )
            console.print(table)
            return

        result = pipeline.query_volume(symbol, start_ms, end_ms, timeframe, source=source)
        if not result.success:
            console.print(f"[red]Query failed:[/red] {result.message}")
            raise typer.Exit(code=1)
        table = Table(title=f"{symbol.lower()} {timeframe} volume ({source})")
        table.add_column("time")
        table.add_column("buy", justify="right")
        table.add_column("sell", justify="right")
        table.add_column("delta", justify="right")
        for point in result.data or []:
            table.add_row(
                _format_ms(point.time),
                f"{point.buy_volume:.2f}",
                f"{point.sell_volume:.2f}",
                f"{point.buy_volume - point.sell_volume:.2f}",
            )
        console.print(table)
    finally:
        pipeline.close()


@app.command("stats")
def stats() -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    pipeline = VolumeCollectorPipeline(settings)
    try:
        status = pipeline.status()
    finally:
        pipeline.close()

    if status.store_stats is None:
        console.print(f"[red]Stats unavailable:[/red] {status.message}")
        raise typer.Exit(code=1)

    store_stats = status.store_stats
    console.print(
        "Store: "
        f"entries={store_stats.total_entries}, "
        f"oldest={_format_ms(store_stats.oldest_entry or None)}, "
        f"newest={_format_ms(store_stats.newest_entry or None)}"
    )
    for symbol, count in store_stats.entries_by_symbol.items():
        console.print(f" - {symbol}: {count}")


@app.command("connection-logs")
def connection_logs(
    symbol: str | None = typer.Option(default=None),
    event: ConnectionEvent | None = typer.Option(default=None),
    since: str | None = typer.Option(default=None, help="Only entries at or after this time"),
    limit: int = typer.Option(default=50, min=1),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    pipeline = VolumeCollectorPipeline(settings)
    try:
        result = pipeline.connection_logs(
            start_time=_parse_time(since) if since is not None else None,
            symbol=symbol,
            event=event,
            limit=limit,
        )
    finally:
        pipeline.close()

    if not result.success:
        console.print(f"[red]Query failed:[/red] {result.message}")
        raise typer.Exit(code=1)

    table = Table(title="Connection log")
    table.add_column("time")
    table.add_column("symbol")
    table.add_column("event")
    table.add_column("details")
    for entry in result.data or []:
        table.add_row(_format_ms(entry.timestamp), entry.symbol, str(entry.event), entry.details or "")
    console.print(table)


@app.command("cleanup")
def cleanup(
    retention_hours: int | None = typer.Option(default=None, min=1, help="Override configured retention"),
    vacuum: bool = typer.Option(default=False, help="Run VACUUM after deleting"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    pipeline = VolumeCollectorPipeline(settings)
    try:
        summary = pipeline.cleanup(retention_hours, vacuum=vacuum)
    except PersistenceError as exc:
        console.print(f"[red]Cleanup failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        pipeline.close()

    console.print(
        "Cleanup complete: "
        f"cutoff={_format_ms(summary.cutoff_ms)}, "
        f"buckets={summary.buckets_deleted}, "
        f"raw_trades={summary.raw_trades_deleted}, "
        f"connection_logs={summary.connection_logs_deleted}"
    )


if __name__ == "__main__":
    app()
