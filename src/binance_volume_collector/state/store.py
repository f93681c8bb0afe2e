from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from binance_volume_collector.core.enums import ConnectionEvent
from binance_volume_collector.core.errors import PersistenceError
from binance_volume_collector.core.models import (
    ConnectionLogEntry,
    RawTradeRecord,
    RetentionSummary,
    StoreStats,
    VolumeBucket,
)

logger = logging.getLogger(__name__)


class VolumeStore(ABC):
    """Durable storage for volume buckets, raw trades and the connection audit log.

    Writes are synchronous: every call either commits or raises
    ``PersistenceError``.
    """

    @abstractmethod
    def save_bucket(self, entry: VolumeBucket) -> int: ...

    @abstractmethod
    def save_raw_trade(self, trade: RawTradeRecord) -> int: ...

    @abstractmethod
    def save_raw_trades(self, trades: Sequence[RawTradeRecord]) -> int: ...

    @abstractmethod
    def log_connection_event(self, event: ConnectionLogEntry) -> int: ...

    @abstractmethod
    def query_buckets(
        self,
        symbol: str,
        start_time: int,
        end_time: int,
        timeframe: str | None = None,
    ) -> list[VolumeBucket]: ...

    @abstractmethod
    def query_raw_trades(
        self,
        pair: str,
        start_time: int | None = None,
        end_time: int | None = None,
    ) -> list[RawTradeRecord]: ...

    @abstractmethod
    def stored_timeframes(self, symbol: str, start_time: int, end_time: int) -> list[str]: ...

    @abstractmethod
    def get_stats(self) -> StoreStats: ...

    def close(self) -> None:
        return None


class SQLiteVolumeStore(VolumeStore):
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self, *, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
        try:
            connection = sqlite3.connect(self._db_path, timeout=timeout)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open {self._db_path}: {exc}") from exc
        try:
            yield connection
        except sqlite3.Error as exc:
            connection.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            connection.close()

    def _initialize(self) -> None:
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS volume_buckets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    timeframe TEXT NOT NULL,
                    buy_volume REAL NOT NULL,
                    sell_volume REAL NOT NULL,
                    event_time INTEGER,
                    created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS connection_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    symbol TEXT NOT NULL,
                    event TEXT NOT NULL,
                    details TEXT,
                    created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS raw_trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    pair TEXT NOT NULL,
                    price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    is_buyer_maker INTEGER NOT NULL
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_volume_buckets_symbol_timestamp ON volume_buckets(symbol, timestamp)"
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_connection_logs_timestamp ON connection_logs(timestamp)"
            )
            connection.execute("CREATE INDEX IF NOT EXISTS idx_raw_trades_pair_timestamp ON raw_trades(pair, timestamp)")
            connection.commit()

    def save_bucket(self, entry: VolumeBucket) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO volume_buckets(
                    symbol, timestamp, timeframe, buy_volume, sell_volume, event_time
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.symbol.lower(),
                    int(entry.timestamp),
                    entry.timeframe,
                    float(entry.buy_volume),
                    float(entry.sell_volume),
                    entry.event_time,
                ),
            )
            connection.commit()
        return int(cursor.lastrowid)

    def save_raw_trade(self, trade: RawTradeRecord) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO raw_trades(timestamp, pair, price, quantity, is_buyer_maker)
                VALUES (?, ?, ?, ?, ?)
                """,
                self._raw_trade_params(trade),
            )
            connection.commit()
        return int(cursor.lastrowid)

    def save_raw_trades(self, trades: Sequence[RawTradeRecord]) -> int:
        """Insert a batch in a single transaction; returns the number of rows written."""
        if not trades:
            return 0
        with self._connect() as connection:
            connection.executemany(
                """
                INSERT INTO raw_trades(timestamp, pair, price, quantity, is_buyer_maker)
                VALUES (?, ?, ?, ?, ?)
                """,
                [self._raw_trade_params(trade) for trade in trades],
            )
            connection.commit()
        return len(trades)

    def log_connection_event(self, event: ConnectionLogEntry) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO connection_logs(timestamp, symbol, event, details)
                VALUES (?, ?, ?, ?)
                """,
                (int(event.timestamp), event.symbol.lower(), str(event.event), event.details),
            )
            connection.commit()
        return int(cursor.lastrowid)

    def query_buckets(
        self,
        symbol: str,
        start_time: int,
        end_time: int,
        timeframe: str | None = None,
    ) -> list[VolumeBucket]:
        query = """
            SELECT symbol, timeframe, timestamp, buy_volume, sell_volume, event_time
            FROM volume_buckets
            WHERE symbol = ? AND timestamp BETWEEN ? AND ?
        """
        params: list[int | str] = [symbol.lower(), int(start_time), int(end_time)]
        if timeframe is not None:
            query += " AND timeframe = ?"
            params.append(timeframe)
        query += " ORDER BY timestamp ASC, id ASC"

        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()

        return [
            VolumeBucket(
                symbol=row_symbol,
                timeframe=row_timeframe,
                timestamp=int(timestamp),
                buy_volume=float(buy_volume),
                sell_volume=float(sell_volume),
                event_time=int(event_time) if event_time is not None else None,
            )
            for row_symbol, row_timeframe, timestamp, buy_volume, sell_volume, event_time in rows
        ]

    def query_raw_trades(
        self,
        pair: str,
        start_time: int | None = None,
        end_time: int | None = None,
    ) -> list[RawTradeRecord]:
        query = """
            SELECT timestamp, pair, price, quantity, is_buyer_maker
            FROM raw_trades
            WHERE pair = ?
        """
        params: list[int | str] = [pair.lower()]
        if start_time is not None:
            query += " AND timestamp >= ?"
            params.append(int(start_time))
        if end_time is not None:
            query += " AND timestamp <= ?"
            params.append(int(end_time))
        query += " ORDER BY timestamp ASC, id ASC"

        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()

        return [
            RawTradeRecord(
                timestamp=int(timestamp),
                pair=row_pair,
                price=float(price),
                quantity=float(quantity),
                is_buyer_maker=bool(is_buyer_maker),
            )
            for timestamp, row_pair, price, quantity, is_buyer_maker in rows
        ]

    def stored_timeframes(self, symbol: str, start_time: int, end_time: int) -> list[str]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT DISTINCT timeframe FROM volume_buckets
                WHERE symbol = ? AND timestamp BETWEEN ? AND ?
                """,
                (symbol.lower(), int(start_time), int(end_time)),
            ).fetchall()
        return sorted(row[0] for row in rows)

    def available_symbols(self) -> list[str]:
        with self._connect() as connection:
            rows = connection.execute("SELECT DISTINCT symbol FROM volume_buckets ORDER BY symbol").fetchall()
        return [row[0] for row in rows]

    def get_connection_logs(
        self,
        *,
        start_time: int | None = None,
        end_time: int | None = None,
        symbol: str | None = None,
        event: ConnectionEvent | str | None = None,
        limit: int | None = None,
    ) -> list[ConnectionLogEntry]:
        query = "SELECT timestamp, symbol, event, details FROM connection_logs WHERE 1=1"
        params: list[int | str] = []
        if start_time is not None:
            query += " AND timestamp >= ?"
            params.append(int(start_time))
        if end_time is not None:
            query += " AND timestamp <= ?"
            params.append(int(end_time))
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol.lower())
        if event is not None:
            query += " AND event = ?"
            params.append(str(event))
        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()

        return [
            ConnectionLogEntry(
                timestamp=int(timestamp),
                symbol=row_symbol,
                event=ConnectionEvent(row_event),
                details=details,
            )
            for timestamp, row_symbol, row_event, details in rows
        ]

    def get_stats(self) -> StoreStats:
        with self._connect() as connection:
            total = connection.execute("SELECT COUNT(*) FROM volume_buckets").fetchone()[0]
            by_symbol = connection.execute(
                "SELECT symbol, COUNT(*) FROM volume_buckets GROUP BY symbol ORDER BY symbol"
            ).fetchall()
            oldest, newest = connection.execute(
                "SELECT MIN(timestamp), MAX(timestamp) FROM volume_buckets"
            ).fetchone()

        return StoreStats(
            total_entries=int(total),
            entries_by_symbol={row_symbol: int(count) for row_symbol, count in by_symbol},
            oldest_entry=int(oldest or 0),
            newest_entry=int(newest or 0),
        )

    def cleanup_before(self, cutoff_ms: int, *, vacuum: bool = False) -> RetentionSummary:
        with self._connect(timeout=15.0) as connection:
            connection.execute("PRAGMA busy_timeout=15000")
            buckets_deleted = self._rows_deleted(
                connection.execute("DELETE FROM volume_buckets WHERE timestamp < ?", (int(cutoff_ms),))
            )
            raw_trades_deleted = self._rows_deleted(
                connection.execute("DELETE FROM raw_trades WHERE timestamp < ?", (int(cutoff_ms),))
            )
            connection_logs_deleted = self._rows_deleted(
                connection.execute("DELETE FROM connection_logs WHERE timestamp < ?", (int(cutoff_ms),))
            )
            connection.commit()

        if vacuum:
            with self._connect(timeout=15.0) as connection:
                connection.execute("PRAGMA busy_timeout=15000")
                connection.execute("VACUUM")

        summary = RetentionSummary(
            cutoff_ms=int(cutoff_ms),
            buckets_deleted=buckets_deleted,
            raw_trades_deleted=raw_trades_deleted,
            connection_logs_deleted=connection_logs_deleted,
        )
        logger.info(
            "Retention cleanup complete",
            extra={"cutoff_ms": summary.cutoff_ms, "rows_deleted": summary.total_deleted},
        )
        return summary

    @staticmethod
    def _rows_deleted(cursor: sqlite3.Cursor) -> int:
        return max(int(cursor.rowcount), 0)

    @staticmethod
    def _raw_trade_params(trade: RawTradeRecord) -> tuple[int, str, float, float, int]:
        return (
            int(trade.timestamp),
            trade.pair.lower(),
            float(trade.price),
            float(trade.quantity),
            1 if trade.is_buyer_maker else 0,
        )
