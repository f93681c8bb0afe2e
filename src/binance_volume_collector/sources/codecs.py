from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any

from binance_volume_collector.core.enums import FeedKind
from binance_volume_collector.core.errors import ConfigurationError, ProtocolError
from binance_volume_collector.core.models import DecodedEvent, RawTradeRecord, VolumeDelta


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return int(normalized)
        except ValueError:
            try:
                return int(float(normalized))
            except ValueError:
                return None
    return None


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return float(normalized)
        except ValueError:
            return None
    return None


def _parse_depth_levels(value: Any) -> tuple[tuple[float, float], ...]:
    if not isinstance(value, list):
        return ()

    levels: list[tuple[float, float]] = []
    for level in value:
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            continue
        price = _coerce_float(level[0])
        quantity = _coerce_float(level[1])
        if price is None or quantity is None or not (math.isfinite(price) and math.isfinite(quantity)):
            continue
        levels.append((price, quantity))
    return tuple(levels)


class EventCodec(ABC):
    """Turns one decoded JSON message of a symbol stream into a volume delta."""

    kind: FeedKind

    @abstractmethod
    def stream_name(self, symbol: str) -> str: ...

    @abstractmethod
    def decode(self, symbol: str, payload: Any, arrival_time_ms: int) -> DecodedEvent:
        """Raise ``ProtocolError`` when the payload cannot yield valid deltas."""


class TradeCodec(EventCodec):
    kind = FeedKind.TRADE

    def __init__(self, *, capture_raw: bool = False) -> None:
        self._capture_raw = capture_raw

    def stream_name(self, symbol: str) -> str:
        return f"{symbol.lower()}@trade"

    def decode(self, symbol: str, payload: Any, arrival_time_ms: int) -> DecodedEvent:
        if not isinstance(payload, dict):
            raise ProtocolError(f"Trade payload must be an object, got {type(payload).__name__}")

        price = _coerce_float(payload.get("p"))
        quantity = _coerce_float(payload.get("q"))
        is_buyer_maker = payload.get("m")
        if price is None or quantity is None or not isinstance(is_buyer_maker, bool):
            raise ProtocolError("Trade payload is missing price, quantity or maker flag")
        if not (math.isfinite(price) and math.isfinite(quantity)):
            raise ProtocolError("Trade payload has a non-finite price or quantity")
        if price < 0 or quantity < 0:
            raise ProtocolError("Trade payload has negative price or quantity")

        trade_time = _coerce_int(payload.get("T"))
        if trade_time is None:
            trade_time = _coerce_int(payload.get("E"))
        if trade_time is None:
            raise ProtocolError("Trade payload has no event time")

        # Taker buys hit the ask; a buyer-maker trade is a taker sell.
        volume = price * quantity
        delta = VolumeDelta(
            event_time=trade_time,
            buy_volume=0.0 if is_buyer_maker else volume,
            sell_volume=volume if is_buyer_maker else 0.0,
        )

        trade = None
        if self._capture_raw:
            pair = str(payload.get("s") or symbol).lower()
            trade = RawTradeRecord(
                timestamp=trade_time,
                pair=pair,
                price=price,
                quantity=quantity,
                is_buyer_maker=is_buyer_maker,
            )
        return DecodedEvent(delta=delta, trade=trade)


class DepthCodec(EventCodec):
    """Approximate buy/sell volume from order-book depth updates.

    Resting liquidity is not traded volume. Each bid level contributes
    ``price * quantity`` to the buy side and each ask level to the sell side,
    optionally limited to the best ``top_levels`` levels and multiplied by
    ``volume_scale``. Treat the result as a heuristic indicator of order-book
    pressure, never as a measurement of executed volume.
    """

    kind = FeedKind.DEPTH

    def __init__(
        self,
        *,
        top_levels: int | None = None,
        volume_scale: float = 1.0,
        update_speed_ms: int = 100,
    ) -> None:
        if top_levels is not None and top_levels < 1:
            raise ConfigurationError("top_levels must be positive")
        if volume_scale <= 0:
            raise ConfigurationError("volume_scale must be positive")
        self._top_levels = top_levels
        self._volume_scale = volume_scale
        self._update_speed_ms = update_speed_ms

    def stream_name(self, symbol: str) -> str:
        return f"{symbol.lower()}@depth@{self._update_speed_ms}ms"

    def decode(self, symbol: str, payload: Any, arrival_time_ms: int) -> DecodedEvent:
        if not isinstance(payload, dict):
            raise ProtocolError(f"Depth payload must be an object, got {type(payload).__name__}")

        raw_bids = payload.get("b", payload.get("bids"))
        raw_asks = payload.get("a", payload.get("asks"))
        if not isinstance(raw_bids, list) or not isinstance(raw_asks, list):
            raise ProtocolError("Depth payload is missing bid or ask levels")

        # Partial book snapshots carry no event time.
        event_time = _coerce_int(payload.get("E"))
        if event_time is None:
            event_time = arrival_time_ms

        return DecodedEvent(
            delta=VolumeDelta(
                event_time=event_time,
                buy_volume=self._side_volume(_parse_depth_levels(raw_bids)),
                sell_volume=self._side_volume(_parse_depth_levels(raw_asks)),
            )
        )

    def _side_volume(self, levels: tuple[tuple[float, float], ...]) -> float:
        active = [(price, quantity) for price, quantity in levels if quantity > 0 and price > 0]
        if self._top_levels is not None:
            active = active[: self._top_levels]
        return sum(price * quantity for price, quantity in active) * self._volume_scale


def build_codec(
    feed_kind: FeedKind | str,
    *,
    capture_raw: bool = False,
    depth_top_levels: int | None = None,
    depth_volume_scale: float = 1.0,
    depth_update_speed_ms: int = 100,
) -> EventCodec:
    try:
        kind = FeedKind(feed_kind)
    except ValueError:
        raise ConfigurationError(f"Unsupported feed kind {feed_kind!r}") from None

    if kind is FeedKind.TRADE:
        return TradeCodec(capture_raw=capture_raw)
    return DepthCodec(
        top_levels=depth_top_levels,
        volume_scale=depth_volume_scale,
        update_speed_ms=depth_update_speed_ms,
    )
