from __future__ import annotations

from dataclasses import dataclass, field

from binance_volume_collector.core.enums import ConnectionEvent, ConnectionState


@dataclass(frozen=True, slots=True)
class VolumeDelta:
    """Buy/sell contribution of one decoded feed message."""

    event_time: int
    buy_volume: float
    sell_volume: float


@dataclass(frozen=True, slots=True)
class RawTradeRecord:
    timestamp: int
    pair: str
    price: float
    quantity: float
    is_buyer_maker: bool


@dataclass(frozen=True, slots=True)
class DecodedEvent:
    delta: VolumeDelta
    trade: RawTradeRecord | None = None


@dataclass(slots=True)
class VolumeBucket:
    symbol: str
    timeframe: str
    timestamp: int
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    event_time: int | None = None

    def add(self, buy_volume: float, sell_volume: float, event_time: int) -> None:
        self.buy_volume += buy_volume
        self.sell_volume += sell_volume
        self.event_time = event_time


@dataclass(frozen=True, slots=True)
class ConnectionLogEntry:
    timestamp: int
    symbol: str
    event: ConnectionEvent
    details: str | None = None


@dataclass(frozen=True, slots=True)
class VolumePoint:
    time: int
    buy_volume: float
    sell_volume: float


@dataclass(frozen=True, slots=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    total_volume: float
    buy_volume: float
    sell_volume: float


@dataclass(frozen=True, slots=True)
class StoreStats:
    total_entries: int
    entries_by_symbol: dict[str, int] = field(default_factory=dict)
    oldest_entry: int = 0
    newest_entry: int = 0


@dataclass(frozen=True, slots=True)
class RetentionSummary:
    cutoff_ms: int
    buckets_deleted: int
    raw_trades_deleted: int
    connection_logs_deleted: int

    @property
    def total_deleted(self) -> int:
        return self.buckets_deleted + self.raw_trades_deleted + self.connection_logs_deleted


@dataclass(frozen=True, slots=True)
class SymbolStatus:
    state: ConnectionState
    reconnect_count: int
    last_connected: int | None
    last_disconnected: int | None
    last_error: str | None
