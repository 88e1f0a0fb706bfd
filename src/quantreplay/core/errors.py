from __future__ import annotations

from typing import Optional

import pandas as pd


class QuantReplayError(Exception):
    """Base class for all backtest errors."""


class InvalidConfig(QuantReplayError, ValueError):
    """Strategy or run configuration failed validation. Aborts the run."""


class CandleOrderError(QuantReplayError, ValueError):
    """Candle timestamp is not strictly after the previous one."""

    def __init__(self, timestamp: pd.Timestamp, previous: pd.Timestamp):
        super().__init__(f"Candle {timestamp} is not after previous candle {previous}")
        self.timestamp = timestamp
        self.previous = previous


class InsufficientData(QuantReplayError):
    """Fewer candles than the indicator warm-up requires."""

    def __init__(self, available: int, required: int):
        super().__init__(f"Insufficient data: {available} candles, warm-up requires {required}")
        self.available = int(available)
        self.required = int(required)


class SignalRejected(QuantReplayError):
    """A signal the ledger refused to apply. Non-fatal: replay continues."""

    def __init__(self, message: str, timestamp: Optional[pd.Timestamp] = None):
        super().__init__(message if timestamp is None else f"[{timestamp}] {message}")
        self.timestamp = timestamp


class CapacityExceeded(SignalRejected):
    """PYRAMID while already holding max_lots."""


class DirectionConflict(SignalRejected):
    """Signal direction disagrees with the open position."""
