from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional

from quantreplay.core.errors import CandleOrderError
from quantreplay.core.types import Candle
from quantreplay.indicators.atr import ATR
from quantreplay.indicators.moving_average import EMA
from quantreplay.indicators.rsi import RSI
from quantreplay.indicators.supertrend import Supertrend

logger = logging.getLogger(__name__)

EMA_FAST = "ema_fast"
EMA_SLOW = "ema_slow"
ATR_VALUE = "atr"
RSI_VALUE = "rsi"
SUPERTREND = "supertrend"


@dataclass(frozen=True)
class IndicatorSettings:
    """Which indicators to compute and with which periods.

    A period of None disables the indicator (it then never gates warm-up).
    """

    fast_period: Optional[int] = 9
    slow_period: Optional[int] = 21
    atr_period: Optional[int] = 14
    rsi_period: Optional[int] = 14
    supertrend_period: Optional[int] = None
    supertrend_multiplier: float = 3.0

    def warmup_period(self) -> int:
        required: List[int] = [1]
        for p in (self.fast_period, self.slow_period, self.atr_period, self.supertrend_period):
            if p is not None:
                required.append(int(p))
        if self.rsi_period is not None:
            # first close-to-close change needs a previous close
            required.append(int(self.rsi_period) + 1)
        return max(required)


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values after one candle.

    `values[name] is None` means undefined (warm-up not satisfied). `previous`
    is the snapshot of the immediately preceding candle, with its own
    `previous` dropped, so crossovers can only look one candle back.
    """

    candle: Candle
    values: Mapping[str, Optional[float]] = field(default_factory=dict)
    ready: bool = False
    supertrend_bullish: Optional[bool] = None
    trend_changed: bool = False
    previous: Optional["IndicatorSnapshot"] = None

    @property
    def timestamp(self):
        return self.candle.timestamp

    @property
    def close(self) -> float:
        return self.candle.close

    def get(self, name: str) -> Optional[float]:
        return self.values.get(name)

    @property
    def fast_ema(self) -> Optional[float]:
        return self.values.get(EMA_FAST)

    @property
    def slow_ema(self) -> Optional[float]:
        return self.values.get(EMA_SLOW)

    @property
    def atr(self) -> Optional[float]:
        return self.values.get(ATR_VALUE)

    @property
    def rsi(self) -> Optional[float]:
        return self.values.get(RSI_VALUE)

    @property
    def supertrend(self) -> Optional[float]:
        return self.values.get(SUPERTREND)

    def is_defined(self, *names: str) -> bool:
        return all(self.values.get(n) is not None for n in names)

    def _pair(self, a: str, b: str):
        prev = self.previous
        if prev is None or not self.is_defined(a, b) or not prev.is_defined(a, b):
            return None
        return float(prev.values[a]), float(prev.values[b]), float(self.values[a]), float(self.values[b])

    def crossed_above(self, a: str = EMA_FAST, b: str = EMA_SLOW) -> bool:
        """Golden cross: a <= b on the previous candle and a > b now."""
        pair = self._pair(a, b)
        if pair is None:
            return False
        a_prev, b_prev, a_now, b_now = pair
        return a_prev <= b_prev and a_now > b_now

    def crossed_below(self, a: str = EMA_FAST, b: str = EMA_SLOW) -> bool:
        """Dead cross: a >= b on the previous candle and a < b now."""
        pair = self._pair(a, b)
        if pair is None:
            return False
        a_prev, b_prev, a_now, b_now = pair
        return a_prev >= b_prev and a_now < b_now


class IndicatorEngine:
    """Incremental indicator pipeline for one instrument.

    Feed candles strictly in timestamp order with `update()`. Values only
    depend on candles already fed, and stay undefined until `warmup_period`
    candles have been seen.
    """

    def __init__(self, settings: Optional[IndicatorSettings] = None):
        self.settings = settings or IndicatorSettings()
        s = self.settings
        self._ema_fast = EMA(s.fast_period) if s.fast_period is not None else None
        self._ema_slow = EMA(s.slow_period) if s.slow_period is not None else None
        self._atr = ATR(s.atr_period) if s.atr_period is not None else None
        self._rsi = RSI(s.rsi_period) if s.rsi_period is not None else None
        self._supertrend = (
            Supertrend(s.supertrend_period, s.supertrend_multiplier) if s.supertrend_period is not None else None
        )
        self._count = 0
        self._last: Optional[IndicatorSnapshot] = None

    @property
    def warmup_period(self) -> int:
        return self.settings.warmup_period()

    def update(self, candle: Candle) -> IndicatorSnapshot:
        if self._last is not None and not candle.timestamp > self._last.timestamp:
            raise CandleOrderError(candle.timestamp, self._last.timestamp)

        self._count += 1
        raw: Dict[str, Optional[float]] = {}
        bullish: Optional[bool] = None
        if self._ema_fast is not None:
            raw[EMA_FAST] = self._ema_fast.update(candle.close)
        if self._ema_slow is not None:
            raw[EMA_SLOW] = self._ema_slow.update(candle.close)
        if self._atr is not None:
            raw[ATR_VALUE] = self._atr.update(candle.high, candle.low, candle.close)
        if self._rsi is not None:
            raw[RSI_VALUE] = self._rsi.update(candle.close)
        if self._supertrend is not None:
            st = self._supertrend.update(candle.high, candle.low, candle.close)
            raw[SUPERTREND] = st.value if st is not None else None
            bullish = st.bullish if st is not None else None

        ready = self._count >= self.warmup_period
        if not ready:
            raw = {k: None for k in raw}
            bullish = None

        prev = self._last
        changed = bool(
            prev is not None
            and prev.supertrend_bullish is not None
            and bullish is not None
            and prev.supertrend_bullish != bullish
        )
        snap = IndicatorSnapshot(
            candle=candle,
            values=raw,
            ready=ready,
            supertrend_bullish=bullish,
            trend_changed=changed,
            previous=replace(prev, previous=None) if prev is not None else None,
        )
        if ready and (prev is None or not prev.ready):
            logger.debug("Indicators ready at %s after %d candles", candle.timestamp, self._count)
        self._last = snap
        return snap

    def run(self, candles: Iterable[Candle]) -> List[IndicatorSnapshot]:
        return [self.update(c) for c in candles]
