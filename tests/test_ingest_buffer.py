from __future__ import annotations

import random
import threading

import pytest

from binance_volume_collector.core.errors import ConfigurationError
from binance_volume_collector.core.models import RawTradeRecord
from binance_volume_collector.pipeline.buffer import IngestBuffer


def test_trades_accumulate_into_one_second_buckets() -> None:
    buffer = IngestBuffer("1s")

    buffer.ingest("btcusdt", 1000, 10.0, 0.0)
    buffer.ingest("btcusdt", 1500, 0.0, 4.0)
    buffer.ingest("btcusdt", 2200, 3.0, 0.0)

    buckets = buffer.live_buckets("btcusdt")
    assert [(bucket.timestamp, bucket.buy_volume, bucket.sell_volume) for bucket in buckets] == [
        (1000, 10.0, 4.0),
        (2000, 3.0, 0.0),
    ]
    assert buckets[0].event_time == 1500
    assert buckets[0].timeframe == "1s"


def test_symbols_are_buffered_independently() -> None:
    buffer = IngestBuffer("1m")

    buffer.ingest("BTCUSDT", 60_500, 1.0, 0.0)
    buffer.ingest("ethusdt", 61_000, 0.0, 2.0)

    assert buffer.occupancy() == {"btcusdt": 1, "ethusdt": 1}
    assert buffer.live_buckets("btcusdt")[0].timestamp == 60_000
    assert buffer.live_buckets("ethusdt")[0].sell_volume == 2.0


def test_invalid_deltas_are_ignored() -> None:
    buffer = IngestBuffer("1s")

    buffer.ingest("btcusdt", 1000, float("nan"), 0.0)
    buffer.ingest("btcusdt", 1000, -1.0, 0.0)

    assert buffer.live_buckets("btcusdt") == []


def test_unknown_timeframe_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        IngestBuffer("2s")


def test_swap_hands_over_snapshot_and_starts_fresh_map() -> None:
    buffer = IngestBuffer("1s")
    buffer.ingest("btcusdt", 1000, 1.0, 0.0)
    buffer.record_trade(
        "btcusdt",
        RawTradeRecord(timestamp=1000, pair="btcusdt", price=1.0, quantity=1.0, is_buyer_maker=False),
    )

    snapshot = buffer.swap("btcusdt")
    buffer.ingest("btcusdt", 1000, 2.0, 0.0)

    assert [bucket.buy_volume for bucket in snapshot.buckets] == [1.0]
    assert len(snapshot.raw_trades) == 1
    assert buffer.live_buckets("btcusdt")[0].buy_volume == 2.0
    assert buffer.pending_raw_trades() == 0


def test_concurrent_ingest_and_swap_lose_no_volume() -> None:
    buffer = IngestBuffer("1s")
    rng = random.Random(7)
    deltas = [(rng.randint(0, 4_999), rng.random(), rng.random()) for _ in range(20_000)]
    drained: list[float] = []
    done = threading.Event()

    def _flusher() -> None:
        while not done.is_set():
            for snapshot in buffer.swap_all():
                drained.extend(bucket.buy_volume + bucket.sell_volume for bucket in snapshot.buckets)

    flusher = threading.Thread(target=_flusher)
    flusher.start()
    for timestamp, buy, sell in deltas:
        buffer.ingest("btcusdt", timestamp, buy, sell)
    done.set()
    flusher.join()

    remaining = sum(bucket.buy_volume + bucket.sell_volume for bucket in buffer.live_buckets("btcusdt"))
    expected = sum(buy + sell for _, buy, sell in deltas)
    assert sum(drained) + remaining == pytest.approx(expected)
