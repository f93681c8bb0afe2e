from __future__ import annotations

import logging
from dataclasses import dataclass, field

from binance_volume_collector.core.errors import PersistenceError
from binance_volume_collector.core.models import StoreStats, SymbolStatus
from binance_volume_collector.pipeline.buffer import IngestBuffer
from binance_volume_collector.pipeline.flush import FlushScheduler
from binance_volume_collector.sources.websocket import ConnectionSupervisor
from binance_volume_collector.state.store import VolumeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineStatus:
    is_running: bool
    timeframe: str | None = None
    per_symbol: dict[str, SymbolStatus] = field(default_factory=dict)
    buffer_occupancy: dict[str, int] = field(default_factory=dict)
    pending_raw_trades: int = 0
    last_flush_at: int | None = None
    store_stats: StoreStats | None = None
    success: bool = True
    message: str | None = None


class StatusReporter:
    """Read-only view over supervisor state, buffer occupancy and store stats."""

    def __init__(self, store: VolumeStore) -> None:
        self._store = store

    def report(
        self,
        *,
        supervisor: ConnectionSupervisor | None,
        buffer: IngestBuffer | None,
        flush: FlushScheduler | None,
    ) -> PipelineStatus:
        per_symbol = supervisor.status() if supervisor is not None else {}
        is_running = supervisor is not None and supervisor.is_running

        try:
            stats: StoreStats | None = self._store.get_stats()
        except PersistenceError as exc:
            logger.warning("Store statistics unavailable", extra={"error": str(exc)})
            stats = None
            message: str | None = f"Store statistics unavailable: {exc}"
        else:
            message = None

        return PipelineStatus(
            is_running=is_running,
            timeframe=buffer.timeframe if buffer is not None else None,
            per_symbol=per_symbol,
            buffer_occupancy=buffer.occupancy() if buffer is not None else {},
            pending_raw_trades=buffer.pending_raw_trades() if buffer is not None else 0,
            last_flush_at=flush.last_flush_at if flush is not None else None,
            store_stats=stats,
            success=stats is not None,
            message=message,
        )
