from __future__ import annotations

from datetime import UTC, datetime
from typing import Final

from binance_volume_collector.core.errors import ConfigurationError

TIMEFRAMES_MS: Final[dict[str, int]] = {
    "1s": 1_000,
    "5s": 5_000,
    "15s": 15_000,
    "30s": 30_000,
    "1m": 60_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1d": 86_400_000,
}


def timeframe_to_ms(timeframe: str) -> int:
    normalized = timeframe.strip().lower() if isinstance(timeframe, str) else ""
    try:
        return TIMEFRAMES_MS[normalized]
    except KeyError:
        valid = ", ".join(TIMEFRAMES_MS)
        raise ConfigurationError(f"Invalid timeframe {timeframe!r}. Valid values are: {valid}") from None


def timeframe_label(timeframe_ms: int) -> str:
    for label, value in TIMEFRAMES_MS.items():
        if value == timeframe_ms:
            return label
    raise ConfigurationError(f"No timeframe label for {timeframe_ms} ms")


def bucket_start(timestamp_ms: int, timeframe_ms: int) -> int:
    return (int(timestamp_ms) // timeframe_ms) * timeframe_ms


def now_ms() -> int:
    return int(datetime.now(tz=UTC).timestamp() * 1000)


def parse_time_ms(value: str) -> int:
    """Accept epoch milliseconds or an ISO datetime (UTC when naive)."""
    normalized = value.strip()
    if normalized.lstrip("-").isdigit():
        return int(normalized)
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp() * 1000)
