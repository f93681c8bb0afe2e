from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field

from binance_volume_collector.core.models import RawTradeRecord, VolumeBucket
from binance_volume_collector.core.time_utils import bucket_start, timeframe_label, timeframe_to_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BufferSnapshot:
    symbol: str
    buckets: tuple[VolumeBucket, ...] = ()
    raw_trades: tuple[RawTradeRecord, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.buckets and not self.raw_trades


@dataclass(slots=True)
class _SymbolBuffer:
    buckets: dict[int, VolumeBucket] = field(default_factory=dict)
    raw_trades: list[RawTradeRecord] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class IngestBuffer:
    """Per-symbol in-memory accumulator of volume buckets.

    Each symbol has its own map guarded by its own lock. The lock is held only
    for the in-place update of a single bucket and for the swap of the live map,
    so a flush never waits on storage I/O while holding it and symbols never
    contend with each other.
    """

    def __init__(self, timeframe: str = "1s") -> None:
        self._timeframe_ms = timeframe_to_ms(timeframe)
        self._timeframe = timeframe_label(self._timeframe_ms)
        self._symbols: dict[str, _SymbolBuffer] = {}
        self._registry_lock = threading.Lock()

    @property
    def timeframe(self) -> str:
        return self._timeframe

    @property
    def timeframe_ms(self) -> int:
        return self._timeframe_ms

    def symbols(self) -> list[str]:
        with self._registry_lock:
            return list(self._symbols)

    def ingest(self, symbol: str, event_time: int, buy_delta: float, sell_delta: float) -> None:
        if not (math.isfinite(buy_delta) and math.isfinite(sell_delta)) or buy_delta < 0 or sell_delta < 0:
            logger.debug(
                "Ignoring invalid volume delta",
                extra={"symbol": symbol, "buy_delta": buy_delta, "sell_delta": sell_delta},
            )
            return

        start = bucket_start(event_time, self._timeframe_ms)
        buffer = self._buffer(symbol)
        with buffer.lock:
            bucket = buffer.buckets.get(start)
            if bucket is None:
                buffer.buckets[start] = VolumeBucket(
                    symbol=symbol.lower(),
                    timeframe=self._timeframe,
                    timestamp=start,
                    buy_volume=buy_delta,
                    sell_volume=sell_delta,
                    event_time=int(event_time),
                )
            else:
                bucket.add(buy_delta, sell_delta, int(event_time))

    def record_trade(self, symbol: str, trade: RawTradeRecord) -> None:
        buffer = self._buffer(symbol)
        with buffer.lock:
            buffer.raw_trades.append(trade)

    def swap(self, symbol: str) -> BufferSnapshot:
        """Replace the live map with an empty one and hand back what was in it."""
        buffer = self._buffer(symbol)
        with buffer.lock:
            buckets, buffer.buckets = buffer.buckets, {}
            raw_trades, buffer.raw_trades = buffer.raw_trades, []

        return BufferSnapshot(
            symbol=symbol.lower(),
            buckets=tuple(sorted(buckets.values(), key=lambda bucket: bucket.timestamp)),
            raw_trades=tuple(raw_trades),
        )

    def swap_all(self) -> list[BufferSnapshot]:
        return [self.swap(symbol) for symbol in self.symbols()]

    def live_buckets(self, symbol: str) -> list[VolumeBucket]:
        buffer = self._buffer(symbol)
        with buffer.lock:
            return [
                VolumeBucket(
                    symbol=bucket.symbol,
                    timeframe=bucket.timeframe,
                    timestamp=bucket.timestamp,
                    buy_volume=bucket.buy_volume,
                    sell_volume=bucket.sell_volume,
                    event_time=bucket.event_time,
                )
                for bucket in sorted(buffer.buckets.values(), key=lambda bucket: bucket.timestamp)
            ]

    def occupancy(self) -> dict[str, int]:
        result: dict[str, int] = {}
        for symbol in self.symbols():
            buffer = self._buffer(symbol)
            with buffer.lock:
                result[symbol] = len(buffer.buckets)
        return result

    def pending_raw_trades(self) -> int:
        total = 0
        for symbol in self.symbols():
            buffer = self._buffer(symbol)
            with buffer.lock:
                total += len(buffer.raw_trades)
        return total

    def _buffer(self, symbol: str) -> _SymbolBuffer:
        key = symbol.lower()
        with self._registry_lock:
            buffer = self._symbols.get(key)
            if buffer is None:
                buffer = _SymbolBuffer()
                self._symbols[key] = buffer
            return buffer
