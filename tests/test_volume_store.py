from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path

import pytest

from binance_volume_collector.core.enums import ConnectionEvent
from binance_volume_collector.core.errors import PersistenceError
from binance_volume_collector.core.models import ConnectionLogEntry, RawTradeRecord, VolumeBucket
from binance_volume_collector.state.store import SQLiteVolumeStore


def _bucket(symbol: str, timestamp: int, buy: float, sell: float, timeframe: str = "1s") -> VolumeBucket:
    return VolumeBucket(
        symbol=symbol,
        timeframe=timeframe,
        timestamp=timestamp,
        buy_volume=buy,
        sell_volume=sell,
        event_time=timestamp + 1,
    )


def test_store_creates_tables_in_wal_mode(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "volume.sqlite"
    SQLiteVolumeStore(db_path)

    with closing(sqlite3.connect(db_path)) as connection:
        tables = {row[0] for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        journal_mode = connection.execute("PRAGMA journal_mode").fetchone()[0]

    assert {"volume_buckets", "connection_logs", "raw_trades"} <= tables
    assert journal_mode == "wal"


def test_query_buckets_returns_ascending_rows_within_range(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    first_id = store.save_bucket(_bucket("BTCUSDT", 3000, 3.0, 0.0))
    second_id = store.save_bucket(_bucket("btcusdt", 1000, 1.0, 1.0))
    store.save_bucket(_bucket("btcusdt", 2000, 2.0, 0.5, timeframe="1m"))
    store.save_bucket(_bucket("ethusdt", 2000, 9.0, 9.0))

    assert second_id > first_id
    rows = store.query_buckets("btcusdt", 1000, 3000)
    assert [row.timestamp for row in rows] == [1000, 2000, 3000]
    assert rows[0].event_time == 1001

    only_seconds = store.query_buckets("btcusdt", 0, 10_000, timeframe="1s")
    assert [row.timestamp for row in only_seconds] == [1000, 3000]
    assert store.query_buckets("btcusdt", 4000, 5000) == []
    assert store.stored_timeframes("btcusdt", 0, 10_000) == ["1m", "1s"]
    assert store.available_symbols() == ["btcusdt", "ethusdt"]


def test_raw_trades_batch_insert_and_range_query(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    trades = [
        RawTradeRecord(timestamp=2000 + i, pair="BTCUSDT", price=100.0 + i, quantity=1.0, is_buyer_maker=i % 2 == 0)
        for i in range(5)
    ]

    assert store.save_raw_trades(trades) == 5
    assert store.save_raw_trades([]) == 0
    store.save_raw_trade(RawTradeRecord(timestamp=1000, pair="btcusdt", price=1.0, quantity=1.0, is_buyer_maker=True))

    everything = store.query_raw_trades("btcusdt")
    assert [trade.timestamp for trade in everything] == [1000, 2000, 2001, 2002, 2003, 2004]
    assert everything[1].is_buyer_maker is True

    window = store.query_raw_trades("btcusdt", start_time=2001, end_time=2003)
    assert [trade.price for trade in window] == [101.0, 102.0, 103.0]


def test_connection_logs_are_filtered_and_newest_first(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    store.log_connection_event(ConnectionLogEntry(timestamp=1000, symbol="btcusdt", event=ConnectionEvent.CONNECT))
    store.log_connection_event(
        ConnectionLogEntry(
            timestamp=2000,
            symbol="btcusdt",
            event=ConnectionEvent.DISCONNECT,
            details="Code: 1006, Reason: connection lost",
        )
    )
    store.log_connection_event(ConnectionLogEntry(timestamp=3000, symbol="ethusdt", event=ConnectionEvent.CONNECT))

    entries = store.get_connection_logs()
    assert [entry.timestamp for entry in entries] == [3000, 2000, 1000]

    btc = store.get_connection_logs(symbol="BTCUSDT", event=ConnectionEvent.DISCONNECT)
    assert len(btc) == 1
    assert btc[0].details == "Code: 1006, Reason: connection lost"
    assert btc[0].event is ConnectionEvent.DISCONNECT

    assert [entry.timestamp for entry in store.get_connection_logs(start_time=1500, end_time=2500)] == [2000]
    assert len(store.get_connection_logs(limit=2)) == 2


def test_stats_summarize_bucket_rows(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    empty = store.get_stats()
    assert empty.total_entries == 0
    assert empty.entries_by_symbol == {}
    assert empty.oldest_entry == 0

    store.save_bucket(_bucket("btcusdt", 1000, 1.0, 0.0))
    store.save_bucket(_bucket("btcusdt", 5000, 1.0, 0.0))
    store.save_bucket(_bucket("ethusdt", 3000, 1.0, 0.0))

    stats = store.get_stats()
    assert stats.total_entries == 3
    assert stats.entries_by_symbol == {"btcusdt": 2, "ethusdt": 1}
    assert stats.oldest_entry == 1000
    assert stats.newest_entry == 5000


def test_cleanup_before_deletes_old_rows_from_every_table(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    store.save_bucket(_bucket("btcusdt", 1000, 1.0, 0.0))
    store.save_bucket(_bucket("btcusdt", 9000, 1.0, 0.0))
    store.save_raw_trade(RawTradeRecord(timestamp=1000, pair="btcusdt", price=1.0, quantity=1.0, is_buyer_maker=False))
    store.log_connection_event(ConnectionLogEntry(timestamp=1000, symbol="btcusdt", event=ConnectionEvent.ERROR))

    summary = store.cleanup_before(5000, vacuum=True)

    assert summary.buckets_deleted == 1
    assert summary.raw_trades_deleted == 1
    assert summary.connection_logs_deleted == 1
    assert summary.total_deleted == 3
    assert [row.timestamp for row in store.query_buckets("btcusdt", 0, 10_000)] == [9000]


def test_sqlite_failures_surface_as_persistence_error(tmp_path: Path) -> None:
    db_path = tmp_path / "volume.sqlite"
    store = SQLiteVolumeStore(db_path)
    with closing(sqlite3.connect(db_path)) as connection:
        connection.execute("DROP TABLE volume_buckets")
        connection.commit()

    with pytest.raises(PersistenceError):
        store.save_bucket(_bucket("btcusdt", 1000, 1.0, 0.0))
    with pytest.raises(PersistenceError):
        store.get_stats()
