from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_SYMBOLS = ("btcusdt", "ethusdt", "solusdt", "xrpusdt", "dogeusdt", "adausdt")


class Settings(BaseSettings):
    symbols: Annotated[list[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    default_timeframe: str = Field(default="1s")
    feed_kind: Literal["trade", "depth"] = Field(default="trade")

    websocket_base_url: str = Field(default="wss://stream.binance.com:9443/ws")
    depth_update_speed_ms: int = Field(default=100, ge=100)

    db_path: Path = Field(default=Path("./data/volume.sqlite"))
    flush_interval_seconds: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=500, ge=1)
    store_raw_trades: bool = Field(default=False)

    reconnect_base_ms: int = Field(default=1_000, ge=1)
    reconnect_growth: float = Field(default=1.5, ge=1.0)
    reconnect_max_ms: int = Field(default=30_000, ge=1)
    reconnect_on_normal_close: bool = Field(default=False)
    liveness_timeout_seconds: float = Field(default=30.0, ge=0)

    # Order-book depth is not traded volume; these shape the approximation.
    depth_top_levels: int | None = Field(default=None, ge=1)
    depth_volume_scale: float = Field(default=1.0, gt=0)

    retention_hours: int = Field(default=24, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="BVC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("symbols", mode="before")
    @classmethod
    def _split_symbols(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("symbols")
    @classmethod
    def _lower_symbols(cls, value: list[str]) -> list[str]:
        return [item.strip().lower() for item in value]
