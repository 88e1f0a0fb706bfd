from __future__ import annotations

from typing import Optional

import pandas as pd

from quantreplay.data_loader import frame_to_candles
from quantreplay.indicators.engine import IndicatorEngine, IndicatorSettings


def add_indicators(df: pd.DataFrame, settings: Optional[IndicatorSettings] = None) -> pd.DataFrame:
    """Add indicator columns by replaying `df` through an IndicatorEngine.

    Parameters
    ----------
    df:
        OHLC(V) with datetime index and columns: open, high, low, close.
    settings:
        Indicator periods (defaults: EMA 9/21, ATR 14, RSI 14).

    Notes
    -----
    - Values come from the same incremental engine the backtest uses, so the
      frame shows exactly what a strategy saw on each candle (NaN = undefined).
    - Adds `supertrend_bullish` and `trend_changed` when Supertrend is enabled.
    """
    out = df.sort_index().copy()
    engine = IndicatorEngine(settings)
    snaps = engine.run(frame_to_candles(out))

    names = sorted({k for s in snaps for k in s.values})
    for name in names:
        out[name] = [s.values.get(name) if s.values.get(name) is not None else float("nan") for s in snaps]
    if engine.settings.supertrend_period is not None:
        out["supertrend_bullish"] = pd.array([s.supertrend_bullish for s in snaps], dtype="boolean")
        out["trend_changed"] = [bool(s.trend_changed) for s in snaps]
    out["indicators_ready"] = [bool(s.ready) for s in snaps]
    return out
