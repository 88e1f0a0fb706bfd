from __future__ import annotations

from typing import List, Optional


class RSI:
    """Wilder RSI.

    The first average gain/loss is the simple mean of the first `period`
    close-to-close changes, so the first value appears on candle `period + 1`.
    After that both averages use Wilder smoothing:
    `avg = (avg * (period - 1) + x) / period`.
    """

    def __init__(self, period: int = 14):
        self.period = int(period)
        self._close_prev: Optional[float] = None
        self._gains: List[float] = []
        self._losses: List[float] = []
        self._avg_gain: Optional[float] = None
        self._avg_loss: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        if self._avg_gain is None or self._avg_loss is None:
            return None
        if self._avg_loss == 0.0:
            # flat series -> neutral, only gains -> saturated
            return 50.0 if self._avg_gain == 0.0 else 100.0
        rs = self._avg_gain / self._avg_loss
        return 100.0 - 100.0 / (1.0 + rs)

    def update(self, close: float) -> Optional[float]:
        close = float(close)
        if self._close_prev is None:
            self._close_prev = close
            return None

        change = close - self._close_prev
        self._close_prev = close
        gain = max(change, 0.0)
        loss = max(-change, 0.0)

        if self._avg_gain is None:
            self._gains.append(gain)
            self._losses.append(loss)
            if len(self._gains) < self.period:
                return None
            self._avg_gain = sum(self._gains) / self.period
            self._avg_loss = sum(self._losses) / self.period
            self._gains.clear()
            self._losses.clear()
        else:
            n = self.period
            self._avg_gain = (self._avg_gain * (n - 1) + gain) / n
            self._avg_loss = (self._avg_loss * (n - 1) + loss) / n

        return self.value
