from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Generic, TypeVar

from binance_volume_collector.core.config import Settings
from binance_volume_collector.core.enums import ConnectionEvent, QuerySource
from binance_volume_collector.core.errors import ConfigurationError, VolumeCollectorError
from binance_volume_collector.core.models import (
    Candle,
    ConnectionLogEntry,
    DecodedEvent,
    RetentionSummary,
    VolumePoint,
)
from binance_volume_collector.core.time_utils import now_ms, timeframe_to_ms
from binance_volume_collector.pipeline.buffer import IngestBuffer
from binance_volume_collector.pipeline.flush import FlushScheduler
from binance_volume_collector.pipeline.status import PipelineStatus, StatusReporter
from binance_volume_collector.sources.codecs import build_codec
from binance_volume_collector.sources.websocket import (
    BackoffPolicy,
    ConnectFactory,
    ConnectionSupervisor,
    default_connect,
    validate_symbol,
)
from binance_volume_collector.state.store import SQLiteVolumeStore
from binance_volume_collector.transforms.rebucket import AggregationQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class QueryResult(Generic[T]):
    success: bool
    data: T | None = None
    message: str | None = None


class VolumeCollectorPipeline:
    """Owns the supervisor, buffer, flush scheduler and store for one collector process."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: SQLiteVolumeStore | None = None,
        connect: ConnectFactory = default_connect,
    ) -> None:
        self._settings = settings
        self._store = store or SQLiteVolumeStore(settings.db_path)
        self._connect = connect
        self._query = AggregationQuery(self._store)
        self._reporter = StatusReporter(self._store)
        self._lifecycle_lock = threading.Lock()
        self._buffer: IngestBuffer | None = None
        self._flush: FlushScheduler | None = None
        self._supervisor: ConnectionSupervisor | None = None

    @property
    def store(self) -> SQLiteVolumeStore:
        return self._store

    @property
    def buffer(self) -> IngestBuffer | None:
        return self._buffer

    @property
    def flush_scheduler(self) -> FlushScheduler | None:
        return self._flush

    @property
    def is_running(self) -> bool:
        return self._supervisor is not None and self._supervisor.is_running

    def start(self, timeframe: str | None = None) -> None:
        with self._lifecycle_lock:
            if self._supervisor is not None:
                logger.info("Pipeline already running")
                return

            selected = timeframe or self._settings.default_timeframe
            timeframe_to_ms(selected)
            symbols = [validate_symbol(symbol) for symbol in self._settings.symbols]
            if not symbols:
                raise ConfigurationError("No symbols configured")

            buffer = IngestBuffer(selected)
            codec = build_codec(
                self._settings.feed_kind,
                capture_raw=self._settings.store_raw_trades,
                depth_top_levels=self._settings.depth_top_levels,
                depth_volume_scale=self._settings.depth_volume_scale,
                depth_update_speed_ms=self._settings.depth_update_speed_ms,
            )
            flush = FlushScheduler(
                buffer=buffer,
                store=self._store,
                interval_seconds=self._settings.flush_interval_seconds,
                batch_size=self._settings.batch_size,
            )
            supervisor = ConnectionSupervisor(
                codec=codec,
                on_event=self._handle_event,
                websocket_base_url=self._settings.websocket_base_url,
                backoff=BackoffPolicy(
                    base_ms=self._settings.reconnect_base_ms,
                    growth=self._settings.reconnect_growth,
                    max_ms=self._settings.reconnect_max_ms,
                ),
                store=self._store,
                reconnect_on_normal_close=self._settings.reconnect_on_normal_close,
                liveness_timeout_seconds=self._settings.liveness_timeout_seconds,
                connect=self._connect,
            )

            self._buffer = buffer
            self._flush = flush
            self._supervisor = supervisor
            flush.start()
            supervisor.start(symbols)

        logger.info(
            "Pipeline started",
            extra={"timeframe": buffer.timeframe, "feed_kind": codec.kind, "symbols": ",".join(symbols)},
        )

    def stop(self) -> None:
        with self._lifecycle_lock:
            supervisor, flush = self._supervisor, self._flush
            self._supervisor = None
            self._flush = None

        if supervisor is None:
            return
        supervisor.stop()
        if flush is not None:
            flush.stop()
        logger.info("Pipeline stopped")

    def close(self) -> None:
        self.stop()
        self._store.close()

    def status(self) -> PipelineStatus:
        try:
            return self._reporter.report(supervisor=self._supervisor, buffer=self._buffer, flush=self._flush)
        except VolumeCollectorError as exc:
            return PipelineStatus(is_running=self.is_running, success=False, message=str(exc))

    def query_volume(
        self,
        symbol: str,
        start_time: int,
        end_time: int,
        timeframe: str | None = None,
        *,
        source: QuerySource = QuerySource.BUCKETS,
    ) -> QueryResult[list[VolumePoint]]:
        try:
            points = self._query.volume(
                validate_symbol(symbol),
                start_time,
                end_time,
                timeframe or self._settings.default_timeframe,
                source=source,
            )
        except VolumeCollectorError as exc:
            logger.warning("Volume query failed", extra={"symbol": symbol, "error": str(exc)})
            return QueryResult(success=False, data=None, message=str(exc))
        return QueryResult(success=True, data=points)

    def query_candles(
        self,
        symbol: str,
        start_time: int,
        end_time: int,
        timeframe: str | None = None,
    ) -> QueryResult[list[Candle]]:
        try:
            candles = self._query.candles(
                validate_symbol(symbol),
                start_time,
                end_time,
                timeframe or self._settings.default_timeframe,
            )
        except VolumeCollectorError as exc:
            logger.warning("Candle query failed", extra={"symbol": symbol, "error": str(exc)})
            return QueryResult(success=False, data=None, message=str(exc))
        return QueryResult(success=True, data=candles)

    def connection_logs(
        self,
        *,
        start_time: int | None = None,
        end_time: int | None = None,
        symbol: str | None = None,
        event: ConnectionEvent | None = None,
        limit: int | None = None,
    ) -> QueryResult[list[ConnectionLogEntry]]:
        try:
            entries = self._store.get_connection_logs(
                start_time=start_time,
                end_time=end_time,
                symbol=symbol,
                event=event,
                limit=limit,
            )
        except VolumeCollectorError as exc:
            return QueryResult(success=False, data=None, message=str(exc))
        return QueryResult(success=True, data=entries)

    def cleanup(self, retention_hours: int | None = None, *, vacuum: bool = False) -> RetentionSummary:
        hours = retention_hours if retention_hours is not None else self._settings.retention_hours
        cutoff_ms = now_ms() - hours * 3_600_000
        return self._store.cleanup_before(cutoff_ms, vacuum=vacuum)

    def _handle_event(self, symbol: str, event: DecodedEvent) -> None:
        buffer = self._buffer
        if buffer is None:
            return
        delta = event.delta
        buffer.ingest(symbol, delta.event_time, delta.buy_volume, delta.sell_volume)
        if event.trade is not None:
            buffer.record_trade(symbol, event.trade)
