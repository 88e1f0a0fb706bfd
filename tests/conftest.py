"""
Shared fixtures for backtest engine tests.

Candle streams are synthetic and deterministic: open = previous close,
high/low = max/min(open, close) -/+ a fixed spread.
"""

from typing import List, Sequence

import numpy as np
import pandas as pd
import pytest

from quantreplay.core.types import Candle, Side, Signal, SignalKind
from quantreplay.data_loader import DataFrameCandleSource


def build_candles(closes: Sequence[float], start: str = "2024-01-01", freq: str = "D", spread: float = 0.5) -> List[Candle]:
    index = pd.date_range(start, periods=len(closes), freq=freq)
    out: List[Candle] = []
    prev = float(closes[0])
    for ts, c in zip(index, closes):
        c = float(c)
        o = prev
        out.append(Candle(timestamp=ts, open=o, high=max(o, c) + spread, low=min(o, c) - spread, close=c, volume=1000.0))
        prev = c
    return out


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        },
        index=pd.DatetimeIndex([c.timestamp for c in candles], name="timestamp"),
    )


def crossover_closes() -> List[float]:
    """Slow decline, one clean rally, one clean sell-off.

    With EMA 9/21 this produces exactly one golden cross (during the rally)
    and one dead cross (during the sell-off).
    """
    decline = [130.0 - 0.5 * i for i in range(40)]          # 130.0 -> 110.5
    rally = [decline[-1] + 1.5 * (i + 1) for i in range(25)]  # -> 148.0
    selloff = [rally[-1] - 1.5 * (i + 1) for i in range(25)]  # -> 110.5
    return decline + rally + selloff


@pytest.fixture
def make_candles():
    """Factory: closes -> Candle list."""
    return build_candles


@pytest.fixture
def crossover_candles():
    return build_candles(crossover_closes())


@pytest.fixture
def crossover_source(crossover_candles):
    return DataFrameCandleSource({"TEST": candles_to_frame(crossover_candles)})


@pytest.fixture
def random_walk_candles():
    rng = np.random.default_rng(7)
    steps = rng.normal(0.05, 1.2, size=400)
    closes = 100.0 + np.cumsum(steps)
    closes = np.maximum(closes, 5.0)
    return build_candles(closes.tolist(), freq="h")


@pytest.fixture
def signal_factory():
    """Factory for ledger signals on a daily grid."""

    def _make(kind: SignalKind, direction: Side, price: float, day: int, reason: str = "", quantity: float = 1.0, **kw) -> Signal:
        return Signal(
            kind=kind,
            direction=direction,
            price=float(price),
            timestamp=pd.Timestamp("2024-01-01") + pd.Timedelta(days=day),
            reason=reason or kind.value,
            quantity=quantity,
            **kw,
        )

    return _make
