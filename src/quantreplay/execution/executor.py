from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from quantreplay.core.errors import InvalidConfig
from quantreplay.core.types import OrderSide, Side

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fill:
    filled_price: float
    commission: float


@runtime_checkable
class OrderExecutor(Protocol):
    """Turns a fill request into a confirmed price and commission.

    Backtest implementations must be deterministic and may only use the
    requested price (never future candles).
    """

    def fill(self, side: OrderSide, quantity: float, requested_price: float) -> Fill:
        ...


def order_side(direction: Side, opening: bool) -> OrderSide:
    """BUY opens a LONG or covers a SHORT, SELL does the opposite."""
    if direction == Side.FLAT:
        raise ValueError("FLAT has no order side")
    buy = (direction == Side.LONG) == bool(opening)
    return OrderSide.BUY if buy else OrderSide.SELL


@dataclass(frozen=True)
class SimulatedExecutor:
    """Deterministic fill simulator.

    - BUY fills at `price * (1 + slippage_pct)`, SELL at `price * (1 - slippage_pct)`
    - commission = `commission_pct * notional + commission_per_order`
    """

    slippage_pct: float = 0.0
    commission_pct: float = 0.0
    commission_per_order: float = 0.0

    def __post_init__(self) -> None:
        for name in ("slippage_pct", "commission_pct", "commission_per_order"):
            if float(getattr(self, name)) < 0:
                raise InvalidConfig(f"{name} must be >= 0, got {getattr(self, name)}")
        if float(self.slippage_pct) >= 1.0:
            raise InvalidConfig(f"slippage_pct must be < 1, got {self.slippage_pct}")

    def fill(self, side: OrderSide, quantity: float, requested_price: float) -> Fill:
        price = float(requested_price)
        if side == OrderSide.BUY:
            filled = price * (1.0 + float(self.slippage_pct))
        else:
            filled = price * (1.0 - float(self.slippage_pct))
        commission = abs(float(quantity)) * filled * float(self.commission_pct) + float(self.commission_per_order)
        logger.debug("fill %s qty=%s req=%.6f -> %.6f (commission %.6f)", side.value, quantity, price, filled, commission)
        return Fill(filled_price=filled, commission=commission)
