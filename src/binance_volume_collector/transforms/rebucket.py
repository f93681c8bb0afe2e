from __future__ import annotations

import logging

import polars as pl

from binance_volume_collector.core.enums import QuerySource
from binance_volume_collector.core.errors import GranularityUnavailableError
from binance_volume_collector.core.models import Candle, RawTradeRecord, VolumeBucket, VolumePoint
from binance_volume_collector.core.time_utils import timeframe_to_ms
from binance_volume_collector.state.store import VolumeStore

logger = logging.getLogger(__name__)

_BUCKET_SCHEMA = {
    "timestamp": pl.Int64,
    "buy_volume": pl.Float64,
    "sell_volume": pl.Float64,
}
_TRADE_SCHEMA = {
    "timestamp": pl.Int64,
    "price": pl.Float64,
    "quantity": pl.Float64,
    "is_buyer_maker": pl.Boolean,
}


class AggregationQuery:
    """Volume for a symbol over a time range at any supported timeframe.

    Bucket rows can only be folded into coarser buckets: every timeframe stored
    in the range must divide the requested one, otherwise the request raises
    ``GranularityUnavailableError``. Raw trades can be bucketed at any timeframe
    and also yield OHLC candles. Neither path deduplicates replayed events.
    """

    def __init__(self, store: VolumeStore) -> None:
        self._store = store

    def volume(
        self,
        symbol: str,
        start_time: int,
        end_time: int,
        timeframe: str,
        *,
        source: QuerySource = QuerySource.BUCKETS,
    ) -> list[VolumePoint]:
        timeframe_ms = timeframe_to_ms(timeframe)
        if end_time < start_time:
            return []
        if source is QuerySource.RAW_TRADES:
            frame = self._trade_frame(self._store.query_raw_trades(symbol, start_time, end_time), timeframe_ms)
            if frame.is_empty():
                return []
            frame = frame.group_by("time").agg(
                pl.col("buy_notional").sum().alias("buy_volume"),
                pl.col("sell_notional").sum().alias("sell_volume"),
            )
        else:
            frame = self._bucket_frame(symbol, start_time, end_time, timeframe_ms)
            if frame.is_empty():
                return []

        frame = frame.sort("time")
        return [
            VolumePoint(time=int(row["time"]), buy_volume=float(row["buy_volume"]), sell_volume=float(row["sell_volume"]))
            for row in frame.iter_rows(named=True)
        ]

    def candles(self, symbol: str, start_time: int, end_time: int, timeframe: str) -> list[Candle]:
        timeframe_ms = timeframe_to_ms(timeframe)
        if end_time < start_time:
            return []
        frame = self._trade_frame(self._store.query_raw_trades(symbol, start_time, end_time), timeframe_ms)
        if frame.is_empty():
            return []

        frame = (
            frame.group_by("time", maintain_order=True)
            .agg(
                pl.col("price").first().alias("open"),
                pl.col("price").max().alias("high"),
                pl.col("price").min().alias("low"),
                pl.col("price").last().alias("close"),
                pl.col("notional").sum().alias("total_volume"),
                pl.col("buy_notional").sum().alias("buy_volume"),
                pl.col("sell_notional").sum().alias("sell_volume"),
            )
            .sort("time")
        )
        return [
            Candle(
                time=int(row["time"]),
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                total_volume=float(row["total_volume"]),
                buy_volume=float(row["buy_volume"]),
                sell_volume=float(row["sell_volume"]),
            )
            for row in frame.iter_rows(named=True)
        ]

    def _bucket_frame(self, symbol: str, start_time: int, end_time: int, timeframe_ms: int) -> pl.DataFrame:
        stored = self._store.stored_timeframes(symbol, start_time, end_time)
        if not stored:
            return pl.DataFrame(schema={"time": pl.Int64, "buy_volume": pl.Float64, "sell_volume": pl.Float64})

        finer_than_requested = [label for label in stored if timeframe_ms % timeframe_to_ms(label) != 0]
        if finer_than_requested:
            raise GranularityUnavailableError(
                f"{symbol} is stored at {', '.join(finer_than_requested)} in this range; "
                f"cannot derive {timeframe_ms} ms buckets from it"
            )

        rows = self._store.query_buckets(symbol, start_time, end_time)
        logger.debug(
            "Re-bucketing stored rows",
            extra={"symbol": symbol, "rows": len(rows), "stored_timeframes": ",".join(stored)},
        )
        # Split flushes may leave several rows for one bucket, so always sum.
        return (
            self._rows_frame(rows)
            .with_columns(((pl.col("timestamp") // timeframe_ms) * timeframe_ms).alias("time"))
            .group_by("time")
            .agg(pl.col("buy_volume").sum(), pl.col("sell_volume").sum())
        )

    @staticmethod
    def _rows_frame(rows: list[VolumeBucket]) -> pl.DataFrame:
        return pl.DataFrame(
            {
                "timestamp": [row.timestamp for row in rows],
                "buy_volume": [row.buy_volume for row in rows],
                "sell_volume": [row.sell_volume for row in rows],
            },
            schema=_BUCKET_SCHEMA,
        )

    @staticmethod
    def _trade_frame(trades: list[RawTradeRecord], timeframe_ms: int) -> pl.DataFrame:
        frame = pl.DataFrame(
            {
                "timestamp": [trade.timestamp for trade in trades],
                "price": [trade.price for trade in trades],
                "quantity": [trade.quantity for trade in trades],
                "is_buyer_maker": [trade.is_buyer_maker for trade in trades],
            },
            schema=_TRADE_SCHEMA,
        )
        return frame.sort("timestamp", maintain_order=True).with_columns(
            ((pl.col("timestamp") // timeframe_ms) * timeframe_ms).alias("time"),
            (pl.col("price") * pl.col("quantity")).alias("notional"),
        ).with_columns(
            pl.when(pl.col("is_buyer_maker")).then(0.0).otherwise(pl.col("notional")).alias("buy_notional"),
            pl.when(pl.col("is_buyer_maker")).then(pl.col("notional")).otherwise(0.0).alias("sell_notional"),
        )
