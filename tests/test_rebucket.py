from __future__ import annotations

from pathlib import Path

import pytest

from binance_volume_collector.core.enums import QuerySource
from binance_volume_collector.core.errors import ConfigurationError, GranularityUnavailableError
from binance_volume_collector.core.models import RawTradeRecord, VolumeBucket
from binance_volume_collector.state.store import SQLiteVolumeStore
from binance_volume_collector.transforms.rebucket import AggregationQuery


def _store_with_seconds(tmp_path: Path) -> SQLiteVolumeStore:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    for second in range(0, 120):
        store.save_bucket(
            VolumeBucket(
                symbol="btcusdt",
                timeframe="1s",
                timestamp=second * 1000,
                buy_volume=float(second),
                sell_volume=1.0,
                event_time=second * 1000 + 10,
            )
        )
    return store


def test_same_timeframe_returns_stored_rows(tmp_path: Path) -> None:
    query = AggregationQuery(_store_with_seconds(tmp_path))

    points = query.volume("btcusdt", 5_000, 7_000, "1s")

    assert [(point.time, point.buy_volume, point.sell_volume) for point in points] == [
        (5_000, 5.0, 1.0),
        (6_000, 6.0, 1.0),
        (7_000, 7.0, 1.0),
    ]


def test_coarser_timeframe_sums_finer_rows(tmp_path: Path) -> None:
    query = AggregationQuery(_store_with_seconds(tmp_path))

    points = query.volume("btcusdt", 0, 119_999, "1m")

    assert [point.time for point in points] == [0, 60_000]
    assert points[0].buy_volume == pytest.approx(sum(range(60)))
    assert points[1].buy_volume == pytest.approx(sum(range(60, 120)))
    assert points[0].sell_volume == pytest.approx(60.0)


def test_summing_two_half_windows_matches_the_double_window(tmp_path: Path) -> None:
    query = AggregationQuery(_store_with_seconds(tmp_path))

    halves = query.volume("btcusdt", 0, 59_999, "30s")
    whole = query.volume("btcusdt", 0, 59_999, "1m")

    assert len(halves) == 2
    assert len(whole) == 1
    assert sum(point.buy_volume for point in halves) == pytest.approx(whole[0].buy_volume)
    assert sum(point.sell_volume for point in halves) == pytest.approx(whole[0].sell_volume)


def test_repeated_query_is_idempotent(tmp_path: Path) -> None:
    query = AggregationQuery(_store_with_seconds(tmp_path))

    assert query.volume("btcusdt", 0, 119_999, "15s") == query.volume("btcusdt", 0, 119_999, "15s")


def test_duplicate_rows_for_one_bucket_are_summed(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    for buy in (1.0, 2.5):
        store.save_bucket(VolumeBucket(symbol="btcusdt", timeframe="1s", timestamp=1000, buy_volume=buy))

    points = AggregationQuery(store).volume("btcusdt", 0, 5000, "1s")

    assert len(points) == 1
    assert points[0].buy_volume == 3.5


def test_finer_than_stored_is_reported_unavailable(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    store.save_bucket(VolumeBucket(symbol="btcusdt", timeframe="1m", timestamp=60_000, buy_volume=1.0))
    query = AggregationQuery(store)

    with pytest.raises(GranularityUnavailableError):
        query.volume("btcusdt", 0, 120_000, "1s")
    with pytest.raises(ConfigurationError):
        query.volume("btcusdt", 0, 120_000, "2m")


def test_empty_range_yields_empty_sequence(tmp_path: Path) -> None:
    query = AggregationQuery(_store_with_seconds(tmp_path))

    assert query.volume("btcusdt", 500_000, 600_000, "1m") == []
    assert query.volume("btcusdt", 10_000, 5_000, "1s") == []
    assert query.volume("ethusdt", 0, 119_999, "1m") == []
    assert query.candles("btcusdt", 0, 119_999, "1m") == []


def test_raw_trades_rebucket_and_build_candles(tmp_path: Path) -> None:
    store = SQLiteVolumeStore(tmp_path / "volume.sqlite")
    store.save_raw_trades(
        [
            RawTradeRecord(timestamp=1_000, pair="btcusdt", price=100.0, quantity=1.0, is_buyer_maker=False),
            RawTradeRecord(timestamp=1_500, pair="btcusdt", price=105.0, quantity=2.0, is_buyer_maker=True),
            RawTradeRecord(timestamp=2_100, pair="btcusdt", price=95.0, quantity=1.0, is_buyer_maker=False),
            RawTradeRecord(timestamp=4_900, pair="btcusdt", price=101.0, quantity=1.0, is_buyer_maker=True),
            RawTradeRecord(timestamp=6_000, pair="btcusdt", price=110.0, quantity=1.0, is_buyer_maker=False),
        ]
    )
    query = AggregationQuery(store)

    points = query.volume("btcusdt", 0, 9_999, "5s", source=QuerySource.RAW_TRADES)
    assert [(point.time, point.buy_volume, point.sell_volume) for point in points] == [
        (0, pytest.approx(195.0), pytest.approx(311.0)),
        (5_000, pytest.approx(110.0), pytest.approx(0.0)),
    ]

    candles = query.candles("btcusdt", 0, 9_999, "5s")
    assert len(candles) == 2
    first = candles[0]
    assert (first.open, first.high, first.low, first.close) == (100.0, 105.0, 95.0, 101.0)
    assert first.total_volume == pytest.approx(506.0)
    assert candles[1].open == candles[1].close == 110.0

    # Raw trades can be bucketed finer than any stored bucket.
    assert len(query.volume("btcusdt", 0, 9_999, "1s", source=QuerySource.RAW_TRADES)) == 4
