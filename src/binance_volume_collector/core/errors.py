from __future__ import annotations


class VolumeCollectorError(RuntimeError):
    """Base class for collector failures."""


class TransportError(VolumeCollectorError):
    """Socket-level failure; the affected stream reconnects."""


class ProtocolError(VolumeCollectorError):
    """Inbound message could not be decoded; the message is dropped."""


class PersistenceError(VolumeCollectorError):
    """A store read or write failed."""


class ConfigurationError(VolumeCollectorError):
    """Invalid symbol or timeframe supplied to the pipeline."""


class GranularityUnavailableError(VolumeCollectorError):
    """Requested timeframe is finer than (or not aligned with) what was stored."""
