from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import pandas as pd


class Side(int, Enum):
    FLAT = 0
    LONG = 1
    SHORT = -1


class SignalKind(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    PYRAMID = "PYRAMID"


class UnwindMode(str, Enum):
    """Which open lot an EXIT closes."""

    FIFO = "FIFO"  # oldest lot first
    LIFO = "LIFO"  # newest lot first


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TrailingStopType(str, Enum):
    OFF = "OFF"
    # % below the best price since entry
    PERCENTAGE = "PERCENTAGE"
    # ATR(ref) multiple below the best price since entry
    ATR = "ATR"


class RunStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. `timestamp` is the bar open time."""

    timestamp: pd.Timestamp
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Signal:
    """Instruction produced by a strategy for the current candle.

    `close_all` on an EXIT means the caller keeps applying the exit until the
    ledger is flat (opposite crossover, trend flip).
    """

    kind: SignalKind
    direction: Side
    price: float
    timestamp: pd.Timestamp
    reason: str = ""
    quantity: float = 1.0
    close_all: bool = False
    reference_atr: Optional[float] = None


@dataclass
class Lot:
    """One open entry (initial or pyramid) owned by the ledger."""

    lot_id: int
    direction: Side
    entry_price: float
    entry_timestamp: pd.Timestamp
    quantity: float
    entry_reason: str = ""
    entry_commission: float = 0.0
    reference_atr: Optional[float] = None

    # best price seen since entry (high for LONG, low for SHORT)
    extreme_price: float = 0.0
    trailing_active: bool = False

    def __post_init__(self) -> None:
        if self.extreme_price == 0.0:
            self.extreme_price = float(self.entry_price)

    def unrealized_pnl(self, price: float) -> float:
        return (float(price) - self.entry_price) * self.quantity * int(self.direction.value)


@dataclass(frozen=True)
class Trade:
    """Closed lot. One record per lot; appended in close order."""

    symbol: str
    direction: Side
    entry_price: float
    entry_timestamp: pd.Timestamp
    exit_price: float
    exit_timestamp: pd.Timestamp
    quantity: float
    pnl: float
    pnl_percentage: float
    exit_reason: str
    entry_reason: str = ""
    commission: float = 0.0
    lot_id: int = 0

    @property
    def duration_seconds(self) -> float:
        return float((self.exit_timestamp - self.entry_timestamp).total_seconds())


@dataclass(frozen=True)
class EquityPoint:
    timestamp: pd.Timestamp
    equity: float


@dataclass(frozen=True)
class PositionState:
    """Read-only view of the ledger handed to strategies."""

    direction: Side = Side.FLAT
    lot_count: int = 0
    max_lots: int = 1
    total_quantity: float = 0.0
    average_entry_price: float = 0.0
    last_entry_price: Optional[float] = None
    last_entry_atr: Optional[float] = None

    @property
    def is_flat(self) -> bool:
        return self.lot_count == 0

    @property
    def can_pyramid(self) -> bool:
        return 0 < self.lot_count < self.max_lots
