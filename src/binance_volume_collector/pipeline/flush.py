from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from binance_volume_collector.core.errors import PersistenceError
from binance_volume_collector.core.models import RawTradeRecord
from binance_volume_collector.core.time_utils import now_ms
from binance_volume_collector.pipeline.buffer import BufferSnapshot, IngestBuffer
from binance_volume_collector.state.store import VolumeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FlushSummary:
    buckets_written: int = 0
    buckets_dropped: int = 0
    raw_trades_written: int = 0
    raw_trades_dropped: int = 0

    @property
    def is_empty(self) -> bool:
        return (
            self.buckets_written + self.buckets_dropped + self.raw_trades_written + self.raw_trades_dropped
        ) == 0


class FlushScheduler:
    """Periodically drains the ingest buffer into the store.

    Every tick swaps each symbol's live map for an empty one and writes the
    swapped-out snapshot. Writes are at-most-once: a bucket or raw-trade chunk
    whose write fails is logged and dropped, and the next tick runs regardless.
    """

    def __init__(
        self,
        *,
        buffer: IngestBuffer,
        store: VolumeStore,
        interval_seconds: float = 5.0,
        batch_size: int = 500,
        flush_on_stop: bool = True,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self._interval_seconds = interval_seconds
        self._batch_size = max(1, batch_size)
        self._flush_on_stop = flush_on_stop
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._flush_lock = threading.Lock()
        self._last_flush_at: int | None = None
        self._flush_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_flush_at(self) -> int | None:
        return self._last_flush_at

    @property
    def flush_count(self) -> int:
        return self._flush_count

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="volume-flush", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, self._interval_seconds))
            self._thread = None
        if self._flush_on_stop:
            self.flush_once()

    def flush_once(self) -> FlushSummary:
        # Serializes the timer tick with the final flush issued by stop().
        with self._flush_lock:
            buckets_written = buckets_dropped = raw_written = raw_dropped = 0
            for snapshot in self._buffer.swap_all():
                if snapshot.is_empty:
                    continue
                written, dropped = self._persist_buckets(snapshot)
                buckets_written += written
                buckets_dropped += dropped
                written, dropped = self._persist_raw_trades(snapshot.symbol, snapshot.raw_trades)
                raw_written += written
                raw_dropped += dropped

            summary = FlushSummary(
                buckets_written=buckets_written,
                buckets_dropped=buckets_dropped,
                raw_trades_written=raw_written,
                raw_trades_dropped=raw_dropped,
            )
            self._last_flush_at = now_ms()
            self._flush_count += 1

        if summary.is_empty:
            logger.debug("Flush tick with empty buffer")
        else:
            logger.info(
                "Flushed volume buffer",
                extra={
                    "buckets_written": summary.buckets_written,
                    "buckets_dropped": summary.buckets_dropped,
                    "raw_trades_written": summary.raw_trades_written,
                    "raw_trades_dropped": summary.raw_trades_dropped,
                },
            )
        return summary

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self.flush_once()
            except Exception:
                logger.exception("Flush cycle failed")

    def _persist_buckets(self, snapshot: BufferSnapshot) -> tuple[int, int]:
        written = dropped = 0
        for bucket in snapshot.buckets:
            try:
                self._store.save_bucket(bucket)
            except PersistenceError:
                dropped += 1
                logger.exception(
                    "Dropping volume bucket after failed write",
                    extra={"symbol": bucket.symbol, "timeframe": bucket.timeframe, "timestamp": bucket.timestamp},
                )
            else:
                written += 1
        return written, dropped

    def _persist_raw_trades(self, symbol: str, trades: tuple[RawTradeRecord, ...]) -> tuple[int, int]:
        written = dropped = 0
        for offset in range(0, len(trades), self._batch_size):
            chunk = trades[offset : offset + self._batch_size]
            try:
                written += self._store.save_raw_trades(chunk)
            except PersistenceError:
                dropped += len(chunk)
                logger.exception(
                    "Dropping raw trade batch after failed write",
                    extra={"symbol": symbol, "batch_len": len(chunk)},
                )
        return written, dropped
