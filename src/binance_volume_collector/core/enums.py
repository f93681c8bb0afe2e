from __future__ import annotations

from enum import StrEnum


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ConnectionEvent(StrEnum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    ERROR = "error"
    RECONNECT_ATTEMPT = "reconnect_attempt"


class FeedKind(StrEnum):
    TRADE = "trade"
    DEPTH = "depth"


class QuerySource(StrEnum):
    BUCKETS = "buckets"
    RAW_TRADES = "raw"
