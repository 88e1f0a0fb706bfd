"""
Tests for the incremental indicator pipeline.

Covers warm-up gating (undefined, never 0), the no-look-ahead property,
crossover detection against the previous snapshot, and candle ordering.
"""

import pandas as pd
import pytest

from conftest import build_candles
from quantreplay.core.errors import CandleOrderError
from quantreplay.core.types import Candle, PositionState
from quantreplay.indicators.atr import ATR, true_range
from quantreplay.indicators.engine import EMA_FAST, EMA_SLOW, IndicatorEngine, IndicatorSettings
from quantreplay.indicators.moving_average import EMA, SMA
from quantreplay.indicators.rsi import RSI
from quantreplay.indicators.supertrend import Supertrend
from quantreplay.prep import add_indicators
from quantreplay.strategy.config import EmaCrossoverConfig
from quantreplay.strategy.evaluators import EmaCrossoverRule


class TestMovingAverages:
    """SMA / EMA seeding and recursion."""

    def test_sma_undefined_until_period(self):
        sma = SMA(3)
        assert sma.update(1.0) is None
        assert sma.update(2.0) is None
        assert sma.update(3.0) == pytest.approx(2.0)
        assert sma.update(4.0) == pytest.approx(3.0)

    def test_ema_seeded_with_sma(self):
        ema = EMA(3)
        assert ema.update(1.0) is None
        assert ema.update(2.0) is None
        # seed = mean(1, 2, 3)
        assert ema.update(3.0) == pytest.approx(2.0)
        # k = 2 / (3 + 1) = 0.5
        assert ema.update(4.0) == pytest.approx(3.0)
        assert ema.update(6.0) == pytest.approx(4.5)

    def test_ema_never_reports_zero_during_warmup(self):
        ema = EMA(5)
        values = [ema.update(x) for x in [10, 11, 12, 13]]
        assert values == [None, None, None, None]


class TestATR:
    """True range and rolling-mean ATR."""

    def test_first_true_range_is_high_minus_low(self):
        assert true_range(12.0, 10.0, None) == pytest.approx(2.0)

    def test_true_range_uses_previous_close(self):
        # gap up: |high - prev close| dominates
        assert true_range(15.0, 14.0, 10.0) == pytest.approx(5.0)
        # gap down: |low - prev close| dominates
        assert true_range(9.0, 6.0, 12.0) == pytest.approx(6.0)

    def test_atr_is_rolling_mean(self):
        atr = ATR(2)
        assert atr.update(12.0, 10.0, 11.0) is None  # TR 2
        assert atr.update(13.0, 11.0, 12.0) == pytest.approx(2.0)  # TR 2
        assert atr.update(16.0, 12.0, 15.0) == pytest.approx(3.0)  # TR 4


class TestRSI:
    """Wilder RSI."""

    def test_defined_after_period_plus_one(self):
        rsi = RSI(2)
        assert rsi.update(1.0) is None
        assert rsi.update(2.0) is None
        assert rsi.update(1.0) == pytest.approx(50.0)

    def test_wilder_smoothing(self):
        rsi = RSI(2)
        for c in [1.0, 2.0, 1.0]:
            rsi.update(c)
        # avg_gain = (0.5 * 1 + 1) / 2 = 0.75, avg_loss = (0.5 * 1 + 0) / 2 = 0.25
        assert rsi.update(2.0) == pytest.approx(75.0)

    def test_only_gains_saturates(self):
        rsi = RSI(3)
        values = [rsi.update(c) for c in [1, 2, 3, 4, 5]]
        assert values[-1] == pytest.approx(100.0)

    def test_flat_series_is_neutral(self):
        rsi = RSI(3)
        values = [rsi.update(10.0) for _ in range(6)]
        assert values[-1] == pytest.approx(50.0)


class TestSupertrend:
    """Band direction flips."""

    def test_uptrend_then_crash_flips_bearish(self):
        st = Supertrend(period=5, multiplier=2.0)
        closes = [100 + 2 * i for i in range(20)] + [138 - 6 * i for i in range(1, 12)]
        candles = build_candles(closes)
        values = [st.update(c.high, c.low, c.close) for c in candles]

        defined = [v for v in values if v is not None]
        assert defined[19 - 4].bullish is True
        assert defined[-1].bullish is False
        flips = sum(1 for a, b in zip(defined, defined[1:]) if a.bullish != b.bullish)
        assert flips >= 1

    def test_active_band_side(self):
        st = Supertrend(period=3, multiplier=1.0)
        for c in build_candles([100 + i for i in range(10)]):
            v = st.update(c.high, c.low, c.close)
        assert v.bullish is True
        # bullish -> the lower band trails below price
        assert v.value < 109


class TestIndicatorEngine:
    """Snapshot semantics."""

    def test_warmup_period_is_longest_requirement(self):
        settings = IndicatorSettings(fast_period=9, slow_period=21, atr_period=14, rsi_period=14)
        assert IndicatorEngine(settings).warmup_period == 21

        settings = IndicatorSettings(fast_period=5, slow_period=10, atr_period=14, rsi_period=20)
        assert IndicatorEngine(settings).warmup_period == 21

    def test_warmup_gating_with_short_stream(self, make_candles):
        """Slow 21 and only 15 candles: everything undefined, no signals."""
        engine = IndicatorEngine(IndicatorSettings(fast_period=9, slow_period=21, atr_period=14, rsi_period=14))
        cfg = EmaCrossoverConfig(fast_period=9, slow_period=21)
        rule = EmaCrossoverRule()

        candles = make_candles([100 + ((-1) ** i) * i for i in range(15)])
        for c in candles:
            snap = engine.update(c)
            assert snap.ready is False
            assert all(v is None for v in snap.values.values())
            assert rule.evaluate(cfg, snap, PositionState()) == []

    def test_no_look_ahead(self, random_walk_candles):
        settings = IndicatorSettings(fast_period=5, slow_period=13, atr_period=7, rsi_period=7, supertrend_period=7)
        full = IndicatorEngine(settings).run(random_walk_candles)

        for i in (20, 57, 200):
            truncated = IndicatorEngine(settings).run(random_walk_candles[: i + 1])
            assert truncated[-1] == full[i]

    def test_previous_snapshot_is_one_candle_deep(self, make_candles):
        engine = IndicatorEngine(IndicatorSettings(fast_period=2, slow_period=3, atr_period=None, rsi_period=None))
        snaps = engine.run(make_candles([10, 11, 12, 13, 14]))
        last = snaps[-1]
        assert last.previous is not None
        assert last.previous.timestamp == snaps[-2].timestamp
        assert last.previous.previous is None

    def test_crossover_detected_against_previous_snapshot(self, make_candles):
        engine = IndicatorEngine(IndicatorSettings(fast_period=2, slow_period=4, atr_period=None, rsi_period=None))
        snaps = engine.run(make_candles([10, 9, 8, 7, 6, 5, 9, 13]))
        golden = [s.timestamp for s in snaps if s.crossed_above(EMA_FAST, EMA_SLOW)]
        dead = [s.timestamp for s in snaps if s.crossed_below(EMA_FAST, EMA_SLOW)]
        assert len(golden) == 1
        assert dead == []
        # first ready candle never crosses: nothing defined before it
        assert not snaps[3].crossed_above() and not snaps[3].crossed_below()

    def test_out_of_order_candle_rejected(self, make_candles):
        engine = IndicatorEngine()
        candles = make_candles([10, 11, 12])
        engine.update(candles[0])
        engine.update(candles[1])
        with pytest.raises(CandleOrderError):
            engine.update(candles[0])

    def test_duplicate_timestamp_rejected(self):
        engine = IndicatorEngine()
        ts = pd.Timestamp("2024-01-01")
        engine.update(Candle(ts, 10, 11, 9, 10))
        with pytest.raises(CandleOrderError):
            engine.update(Candle(ts, 10, 11, 9, 10.5))

    def test_trend_changed_only_between_ready_snapshots(self):
        settings = IndicatorSettings(fast_period=None, slow_period=None, atr_period=None, rsi_period=None, supertrend_period=3, supertrend_multiplier=1.0)
        closes = [100 + 3 * i for i in range(10)] + [127 - 8 * i for i in range(1, 8)]
        snaps = IndicatorEngine(settings).run(build_candles(closes))
        assert not any(s.trend_changed for s in snaps if not s.ready)
        flips = [s for s in snaps if s.trend_changed]
        assert flips and flips[0].supertrend_bullish is False


class TestAddIndicators:
    """DataFrame view of the engine."""

    def test_columns_and_nan_warmup(self, crossover_candles):
        from conftest import candles_to_frame

        df = candles_to_frame(crossover_candles)
        out = add_indicators(df, IndicatorSettings(fast_period=9, slow_period=21, atr_period=14, rsi_period=14, supertrend_period=10))

        for col in ("ema_fast", "ema_slow", "atr", "rsi", "supertrend", "supertrend_bullish", "trend_changed", "indicators_ready"):
            assert col in out.columns
        assert out["ema_slow"].iloc[:20].isna().all()
        assert out["ema_slow"].iloc[20:].notna().all()
        assert bool(out["indicators_ready"].iloc[-1]) is True
        assert len(out) == len(df)
