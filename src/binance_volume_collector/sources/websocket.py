from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from binance_volume_collector.core.enums import ConnectionEvent, ConnectionState
from binance_volume_collector.core.errors import ConfigurationError, PersistenceError, ProtocolError, TransportError
from binance_volume_collector.core.models import ConnectionLogEntry, DecodedEvent, SymbolStatus
from binance_volume_collector.core.time_utils import now_ms
from binance_volume_collector.sources.codecs import EventCodec
from binance_volume_collector.state.store import VolumeStore

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

_SYMBOL_PATTERN = re.compile(r"^[a-z0-9]{2,30}$")

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[str], AbstractAsyncContextManager[Any]]
EventHandler = Callable[[str, DecodedEvent], None]
AuditSink = Callable[[ConnectionLogEntry], None]


def default_connect(url: str) -> AbstractAsyncContextManager[Any]:
    return websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=20,
        close_timeout=5,
        max_size=2**22,
    )


def validate_symbol(symbol: str) -> str:
    normalized = symbol.strip().lower() if isinstance(symbol, str) else ""
    if not _SYMBOL_PATTERN.match(normalized):
        raise ConfigurationError(f"Invalid symbol {symbol!r}")
    return normalized


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Reconnect delay: ``min(base_ms * growth ** attempt, max_ms)``."""

    base_ms: int = 1_000
    growth: float = 1.5
    max_ms: int = 30_000

    def delay_ms(self, attempt: int) -> int:
        try:
            delay = self.base_ms * self.growth ** max(attempt, 0)
        except OverflowError:
            return self.max_ms
        return int(min(delay, self.max_ms))


class SymbolStream:
    """Connection state of one symbol.

    Mutated only by that symbol's worker thread; the lock keeps ``snapshot``
    consistent for readers on other threads.
    """

    def __init__(
        self,
        symbol: str,
        *,
        backoff: BackoffPolicy | None = None,
        reconnect_on_normal_close: bool = False,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.symbol = symbol
        self._backoff = backoff or BackoffPolicy()
        self._reconnect_on_normal_close = reconnect_on_normal_close
        self._clock = clock
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._last_connected: int | None = None
        self._last_disconnected: int | None = None
        self._last_error: str | None = None

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def attempt(self) -> int:
        with self._lock:
            return self._attempt

    def on_connecting(self) -> None:
        with self._lock:
            self._state = ConnectionState.CONNECTING

    def on_open(self) -> None:
        with self._lock:
            self._state = ConnectionState.CONNECTED
            self._attempt = 0
            self._last_connected = self._clock()

    def on_error(self, message: str) -> None:
        with self._lock:
            self._state = ConnectionState.ERROR
            self._last_error = message

    def on_close(self, code: int | None, *, manual: bool = False) -> int | None:
        """Record the close and return the reconnect delay in ms, or None for no reconnect."""
        with self._lock:
            self._state = ConnectionState.DISCONNECTED
            self._last_disconnected = self._clock()
            if manual:
                return None
            if code == NORMAL_CLOSURE and not self._reconnect_on_normal_close:
                return None
            delay = self._backoff.delay_ms(self._attempt)
            self._attempt += 1
            return delay

    def snapshot(self) -> SymbolStatus:
        with self._lock:
            return SymbolStatus(
                state=self._state,
                reconnect_count=self._attempt,
                last_connected=self._last_connected,
                last_disconnected=self._last_disconnected,
                last_error=self._last_error,
            )


class SymbolStreamWorker:
    """Runs one symbol's feed on its own thread and event loop, reconnecting with backoff."""

    def __init__(
        self,
        *,
        stream: SymbolStream,
        url: str,
        codec: EventCodec,
        on_event: EventHandler,
        audit: AuditSink | None = None,
        connect: ConnectFactory = default_connect,
        liveness_timeout_seconds: float = 30.0,
        read_timeout_seconds: float = 1.0,
    ) -> None:
        self._stream = stream
        self._symbol = stream.symbol
        self._url = url
        self._codec = codec
        self._on_event = on_event
        self._audit = audit
        self._connect = connect
        self._liveness_timeout_seconds = liveness_timeout_seconds
        self._read_timeout_seconds = read_timeout_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stream(self) -> SymbolStream:
        return self._stream

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=f"ws-{self._symbol}", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float = 10.0) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Stream worker did not exit in time", extra={"symbol": self._symbol})
            self._thread = None

    def stop(self) -> None:
        self.request_stop()
        self.join()

    def _run_loop(self) -> None:
        with asyncio.Runner() as runner:
            while not self._stop_event.is_set():
                self._stream.on_connecting()
                manual = False
                try:
                    runner.run(self._run_once())
                    manual = True
                    code: int | None = NORMAL_CLOSURE
                    reason = "Manual disconnection"
                except ConnectionClosed as exc:
                    code, reason = _close_details(exc)
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    self._stream.on_error(message)
                    self._record(ConnectionEvent.ERROR, message)
                    logger.warning(
                        "Stream connection failed",
                        exc_info=True,
                        extra={"symbol": self._symbol, "url": self._url},
                    )
                    code, reason = ABNORMAL_CLOSURE, message

                manual = manual or self._stop_event.is_set()
                delay_ms = self._stream.on_close(code, manual=manual)
                details = "Manual disconnection" if manual else f"Code: {code}, Reason: {reason or 'none'}"
                self._record(ConnectionEvent.DISCONNECT, details)
                logger.info("Stream disconnected", extra={"symbol": self._symbol, "details": details})

                if delay_ms is None:
                    break

                attempt = self._stream.attempt
                self._record(ConnectionEvent.RECONNECT_ATTEMPT, f"Attempt {attempt}, backoff {delay_ms}ms")
                logger.info(
                    "Scheduling reconnect",
                    extra={"symbol": self._symbol, "attempt": attempt, "delay_ms": delay_ms},
                )
                # Returns early when stop() fires; the flag is re-read below.
                self._stop_event.wait(delay_ms / 1000.0)

    async def _run_once(self) -> None:
        async with self._connect(self._url) as websocket:
            self._stream.on_open()
            self._record(ConnectionEvent.CONNECT, None)
            logger.info("Stream connected", extra={"symbol": self._symbol, "url": self._url})

            last_message_at = time.monotonic()
            while not self._stop_event.is_set():
                try:
                    payload = await asyncio.wait_for(websocket.recv(), timeout=self._read_timeout_seconds)
                except TimeoutError:
                    silent_for = time.monotonic() - last_message_at
                    if 0 < self._liveness_timeout_seconds < silent_for:
                        raise TransportError(
                            f"No message received for {self._liveness_timeout_seconds:g}s"
                        ) from None
                    continue

                last_message_at = time.monotonic()
                self._handle_payload(payload)

    def _handle_payload(self, payload: str | bytes) -> None:
        raw_text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        try:
            try:
                message = json.loads(raw_text)
            except json.JSONDecodeError as exc:
                raise ProtocolError(f"Non-JSON payload: {exc.msg}") from exc
            # Combined-stream endpoints wrap each event.
            if isinstance(message, dict) and isinstance(message.get("data"), dict) and "stream" in message:
                message = message["data"]
            decoded = self._codec.decode(self._symbol, message, now_ms())
        except ProtocolError as exc:
            logger.warning("Dropping malformed message", extra={"symbol": self._symbol, "error": str(exc)})
            return

        self._on_event(self._symbol, decoded)

    def _record(self, event: ConnectionEvent, details: str | None) -> None:
        if self._audit is None:
            return
        self._audit(ConnectionLogEntry(timestamp=now_ms(), symbol=self._symbol, event=event, details=details))


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    # No close frame from the peer means the socket dropped.
    if exc.rcvd is None:
        return ABNORMAL_CLOSURE, "connection lost"
    return int(exc.rcvd.code), exc.rcvd.reason


class ConnectionSupervisor:
    """Owns one live feed connection per tracked symbol."""

    def __init__(
        self,
        *,
        codec: EventCodec,
        on_event: EventHandler,
        websocket_base_url: str = "wss://stream.binance.com:9443/ws",
        backoff: BackoffPolicy | None = None,
        store: VolumeStore | None = None,
        reconnect_on_normal_close: bool = False,
        liveness_timeout_seconds: float = 30.0,
        read_timeout_seconds: float = 1.0,
        connect: ConnectFactory = default_connect,
    ) -> None:
        self._codec = codec
        self._on_event = on_event
        self._websocket_base_url = websocket_base_url
        self._backoff = backoff or BackoffPolicy()
        self._store = store
        self._reconnect_on_normal_close = reconnect_on_normal_close
        self._liveness_timeout_seconds = liveness_timeout_seconds
        self._read_timeout_seconds = read_timeout_seconds
        self._connect = connect
        self._workers: dict[str, SymbolStreamWorker] = {}
        self._lock = threading.RLock()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return any(worker.is_alive for worker in self._workers.values())

    def symbols(self) -> list[str]:
        with self._lock:
            return list(self._workers)

    def start(self, symbols: Iterable[str]) -> None:
        normalized = [validate_symbol(symbol) for symbol in symbols]
        if not normalized:
            raise ConfigurationError("At least one symbol is required")

        with self._lock:
            for symbol in dict.fromkeys(normalized):
                if symbol in self._workers:
                    continue
                worker = SymbolStreamWorker(
                    stream=SymbolStream(
                        symbol,
                        backoff=self._backoff,
                        reconnect_on_normal_close=self._reconnect_on_normal_close,
                    ),
                    url=self._stream_url(self._codec.stream_name(symbol)),
                    codec=self._codec,
                    on_event=self._on_event,
                    audit=self._log_connection_event if self._store is not None else None,
                    connect=self._connect,
                    liveness_timeout_seconds=self._liveness_timeout_seconds,
                    read_timeout_seconds=self._read_timeout_seconds,
                )
                self._workers[symbol] = worker
                worker.start()

        logger.info("Connection supervisor started", extra={"symbols": ",".join(normalized)})

    def stop(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            self._workers = {}

        for worker in workers:
            worker.request_stop()
        for worker in workers:
            worker.join()

        if workers:
            logger.info("Connection supervisor stopped", extra={"symbols": len(workers)})

    def status(self) -> dict[str, SymbolStatus]:
        with self._lock:
            workers = dict(self._workers)
        return {symbol: worker.stream.snapshot() for symbol, worker in workers.items()}

    def _log_connection_event(self, entry: ConnectionLogEntry) -> None:
        if self._store is None:
            return
        try:
            self._store.log_connection_event(entry)
        except PersistenceError:
            logger.exception(
                "Failed to write connection log entry",
                extra={"symbol": entry.symbol, "event": str(entry.event)},
            )

    def _stream_url(self, stream_name: str) -> str:
        base = self._websocket_base_url.rstrip("/")
        if base.endswith("/ws"):
            return f"{base}/{stream_name}"
        if base.endswith("/stream"):
            return f"{base}?streams={stream_name}"
        return f"{base}/ws/{stream_name}"
