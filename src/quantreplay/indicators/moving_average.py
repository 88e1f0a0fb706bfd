from __future__ import annotations

from collections import deque
from typing import Deque, Optional


class SMA:
    """Rolling simple moving average. Undefined (None) until `period` values."""

    def __init__(self, period: int):
        self.period = int(period)
        self._window: Deque[float] = deque(maxlen=self.period)

    @property
    def value(self) -> Optional[float]:
        if len(self._window) < self.period:
            return None
        return float(sum(self._window)) / self.period

    def update(self, x: float) -> Optional[float]:
        self._window.append(float(x))
        return self.value


class EMA:
    """Exponential moving average (EMA), updated one close at a time.

    Notes
    -----
    - Smoothing `k = 2 / (period + 1)`, i.e. pandas `ewm(span=period, adjust=False)`.
    - Seeded with the SMA of the first `period` closes instead of the first
      close, so the value is undefined (None) during warm-up and never 0.
    """

    def __init__(self, period: int):
        self.period = int(period)
        self.k = 2.0 / (self.period + 1.0)
        self._seed = SMA(self.period)
        self._value: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        return self._value

    def update(self, x: float) -> Optional[float]:
        if self._value is None:
            self._value = self._seed.update(x)
        else:
            self._value = float(x) * self.k + self._value * (1.0 - self.k)
        return self._value
