from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from quantreplay.indicators.atr import ATR


@dataclass(frozen=True)
class SupertrendValue:
    value: float          # active band (lower when bullish, upper when bearish)
    bullish: bool


class Supertrend:
    """Supertrend(period, multiplier) on top of the rolling-mean ATR.

    Rules
    -----
    - basic bands: hl2 +/- multiplier * ATR
    - final upper band only moves down, unless the previous close broke above it
    - final lower band only moves up, unless the previous close broke below it
    - bearish -> bullish when close > previous final upper band,
      bullish -> bearish when close < previous final lower band
    - first defined candle is bullish iff close > hl2
    """

    def __init__(self, period: int = 10, multiplier: float = 3.0):
        self.period = int(period)
        self.multiplier = float(multiplier)
        self._atr = ATR(self.period)
        self._close_prev: Optional[float] = None
        self._upper: Optional[float] = None
        self._lower: Optional[float] = None
        self._bullish: Optional[bool] = None

    def update(self, high: float, low: float, close: float) -> Optional[SupertrendValue]:
        high, low, close = float(high), float(low), float(close)
        atr = self._atr.update(high, low, close)
        close_prev = self._close_prev
        self._close_prev = close
        if atr is None:
            return None

        hl2 = (high + low) / 2.0
        basic_upper = hl2 + self.multiplier * atr
        basic_lower = hl2 - self.multiplier * atr

        if self._upper is None or self._lower is None or self._bullish is None:
            upper, lower = basic_upper, basic_lower
            bullish = close > hl2
        else:
            prev_upper, prev_lower = self._upper, self._lower
            upper = basic_upper if (basic_upper < prev_upper or (close_prev is not None and close_prev > prev_upper)) else prev_upper
            lower = basic_lower if (basic_lower > prev_lower or (close_prev is not None and close_prev < prev_lower)) else prev_lower

            bullish = self._bullish
            if not bullish and close > prev_upper:
                bullish = True
            elif bullish and close < prev_lower:
                bullish = False

        self._upper, self._lower, self._bullish = upper, lower, bullish
        return SupertrendValue(value=lower if bullish else upper, bullish=bullish)
