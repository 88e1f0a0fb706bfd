from __future__ import annotations

from typing import Optional

from quantreplay.indicators.moving_average import SMA


def true_range(high: float, low: float, close_prev: Optional[float]) -> float:
    tr1 = float(high) - float(low)
    if close_prev is None:
        return tr1
    tr2 = abs(float(high) - float(close_prev))
    tr3 = abs(float(low) - float(close_prev))
    return max(tr1, tr2, tr3)


class ATR:
    """ATR(n) as the rolling mean of true range.

    The first candle has no previous close, so its TR is high - low.
    """

    def __init__(self, period: int = 14):
        self.period = int(period)
        self._tr = SMA(self.period)
        self._close_prev: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        return self._tr.value

    def update(self, high: float, low: float, close: float) -> Optional[float]:
        tr = true_range(high, low, self._close_prev)
        self._close_prev = float(close)
        return self._tr.update(tr)
