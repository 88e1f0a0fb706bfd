"""
Tests for strategy rules and the name-keyed registry.

Snapshots are built by hand so every condition is isolated: crossover,
RSI filter, exit-beats-pyramid, ATR expansion/decline, Supertrend flips.
"""

import pandas as pd
import pytest

from quantreplay.core.errors import InvalidConfig
from quantreplay.core.types import Candle, PositionState, Side, SignalKind
from quantreplay.indicators.engine import ATR_VALUE, EMA_FAST, EMA_SLOW, RSI_VALUE, SUPERTREND, IndicatorSnapshot
from quantreplay.strategy.config import AtrPyramidConfig, EmaCrossoverConfig, SupertrendTrendConfig
from quantreplay.strategy.evaluators import (
    STRATEGY_REGISTRY,
    AtrPyramidRule,
    EmaCrossoverRule,
    SupertrendTrendRule,
    build_strategy,
    strategy_for_config,
)

TS = pd.Timestamp("2024-03-01")


def snapshot(close=100.0, prev=None, bullish=None, trend_changed=False, **values):
    """values: fast/slow/atr/rsi/st for now, prev: dict of the same keys."""

    def _vals(d):
        mapping = {"fast": EMA_FAST, "slow": EMA_SLOW, "atr": ATR_VALUE, "rsi": RSI_VALUE, "st": SUPERTREND}
        return {mapping[k]: v for k, v in d.items()}

    previous = None
    if prev is not None:
        previous = IndicatorSnapshot(
            candle=Candle(TS - pd.Timedelta(days=1), close, close, close, close),
            values=_vals(prev),
            ready=True,
        )
    return IndicatorSnapshot(
        candle=Candle(TS, close, close + 1, close - 1, close),
        values=_vals(values),
        ready=True,
        supertrend_bullish=bullish,
        trend_changed=trend_changed,
        previous=previous,
    )


def long_position(lots=1, max_lots=3, last_atr=1.0, last_price=100.0):
    return PositionState(
        direction=Side.LONG,
        lot_count=lots,
        max_lots=max_lots,
        total_quantity=float(lots),
        average_entry_price=last_price,
        last_entry_price=last_price,
        last_entry_atr=last_atr,
    )


class TestEmaCrossover:
    """Entry, exit and pyramid conditions."""

    cfg = EmaCrossoverConfig(fast_period=9, slow_period=21, rsi_entry_long=30, rsi_entry_short=70, position_size=2.0)
    rule = EmaCrossoverRule()

    def test_golden_cross_enters_long(self):
        snap = snapshot(fast=101, slow=100, rsi=55, atr=1.0, prev=dict(fast=99, slow=100, rsi=50, atr=1.0))
        signals = self.rule.evaluate(self.cfg, snap, PositionState())
        assert len(signals) == 1
        s = signals[0]
        assert s.kind == SignalKind.ENTRY
        assert s.direction == Side.LONG
        assert s.quantity == 2.0
        assert s.price == 100.0
        assert s.reference_atr == 1.0

    def test_dead_cross_enters_short(self):
        snap = snapshot(fast=99, slow=100, rsi=45, prev=dict(fast=101, slow=100))
        signals = self.rule.evaluate(self.cfg, snap, PositionState())
        assert [(s.kind, s.direction) for s in signals] == [(SignalKind.ENTRY, Side.SHORT)]

    def test_rsi_filter_blocks_entry(self):
        snap = snapshot(fast=101, slow=100, rsi=25, prev=dict(fast=99, slow=100))
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_rsi_filter_is_strict(self):
        snap = snapshot(fast=101, slow=100, rsi=30, prev=dict(fast=99, slow=100))
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_rsi_entry_filter_is_one_sided(self):
        # no upper bound on LONG entries, no lower bound on SHORT entries
        long_snap = snapshot(fast=101, slow=100, rsi=95, prev=dict(fast=99, slow=100))
        short_snap = snapshot(fast=99, slow=100, rsi=5, prev=dict(fast=101, slow=100))
        assert [s.direction for s in self.rule.evaluate(self.cfg, long_snap, PositionState())] == [Side.LONG]
        assert [s.direction for s in self.rule.evaluate(self.cfg, short_snap, PositionState())] == [Side.SHORT]

    def test_touching_without_crossing_is_not_a_cross(self):
        snap = snapshot(fast=100, slow=100, rsi=55, prev=dict(fast=99, slow=100))
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_undefined_indicator_gives_no_signal(self):
        snap = snapshot(fast=101, slow=None, rsi=55, prev=dict(fast=99, slow=100))
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_not_ready_snapshot_gives_no_signal(self):
        snap = IndicatorSnapshot(candle=Candle(TS, 1, 1, 1, 1), values={EMA_FAST: None, EMA_SLOW: None}, ready=False)
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_opposite_cross_closes_everything(self):
        snap = snapshot(fast=99, slow=100, rsi=45, prev=dict(fast=101, slow=100))
        signals = self.rule.evaluate(self.cfg, snap, long_position())
        assert len(signals) == 1
        assert signals[0].kind == SignalKind.EXIT
        assert signals[0].close_all is True
        assert signals[0].reason == "OPPOSITE_CROSSOVER"

    def test_rsi_exit(self):
        cfg = EmaCrossoverConfig(rsi_exit_long=40.0)
        snap = snapshot(fast=102, slow=100, rsi=35, prev=dict(fast=101.5, slow=100))
        signals = self.rule.evaluate(cfg, snap, long_position())
        assert [s.reason for s in signals] == ["RSI_EXIT"]

    def test_pyramid_on_atr_expansion(self):
        cfg = EmaCrossoverConfig(pyramiding_enabled=True, max_lots=3, atr_expansion_threshold=0.2)
        snap = snapshot(fast=102, slow=100, rsi=60, atr=1.5, prev=dict(fast=101.5, slow=100))
        signals = self.rule.evaluate(cfg, snap, long_position(lots=1, last_atr=1.0))
        assert [(s.kind, s.direction) for s in signals] == [(SignalKind.PYRAMID, Side.LONG)]

    def test_pyramid_threshold_is_strict(self):
        cfg = EmaCrossoverConfig(pyramiding_enabled=True, max_lots=3, atr_expansion_threshold=0.5)
        snap = snapshot(fast=102, slow=100, rsi=60, atr=1.5, prev=dict(fast=101.5, slow=100))
        assert self.rule.evaluate(cfg, snap, long_position(lots=1, last_atr=1.0)) == []

    def test_no_pyramid_at_capacity(self):
        cfg = EmaCrossoverConfig(pyramiding_enabled=True, max_lots=2, atr_expansion_threshold=0.1)
        snap = snapshot(fast=102, slow=100, rsi=60, atr=2.0, prev=dict(fast=101.5, slow=100))
        assert self.rule.evaluate(cfg, snap, long_position(lots=2, max_lots=2, last_atr=1.0)) == []

    def test_exit_beats_pyramid(self):
        cfg = EmaCrossoverConfig(pyramiding_enabled=True, max_lots=3, atr_expansion_threshold=0.1)
        # dead cross and ATR doubled on the same candle
        snap = snapshot(fast=99, slow=100, rsi=45, atr=2.0, prev=dict(fast=101, slow=100))
        signals = self.rule.evaluate(cfg, snap, long_position(lots=1, last_atr=1.0))
        assert [s.kind for s in signals] == [SignalKind.EXIT]

    def test_evaluate_is_pure(self):
        snap = snapshot(fast=101, slow=100, rsi=55, prev=dict(fast=99, slow=100))
        first = self.rule.evaluate(self.cfg, snap, PositionState())
        second = self.rule.evaluate(self.cfg, snap, PositionState())
        assert first == second


class TestAtrPyramid:
    """Supertrend flip entries, volatility-expansion pyramiding."""

    rule = AtrPyramidRule()
    cfg = AtrPyramidConfig(rsi_entry_long=50, rsi_entry_short=50, atr_expansion_threshold=0.1, atr_decline_threshold=0.1)

    def test_bullish_flip_enters_long(self):
        snap = snapshot(st=98, atr=1.0, rsi=60, bullish=True, trend_changed=True)
        signals = self.rule.evaluate(self.cfg, snap, PositionState())
        assert [(s.kind, s.direction, s.reason) for s in signals] == [(SignalKind.ENTRY, Side.LONG, "SUPERTREND_FLIP")]
        assert signals[0].reference_atr == 1.0

    def test_bearish_flip_enters_short(self):
        snap = snapshot(st=102, atr=1.0, rsi=40, bullish=False, trend_changed=True)
        signals = self.rule.evaluate(self.cfg, snap, PositionState())
        assert [(s.kind, s.direction) for s in signals] == [(SignalKind.ENTRY, Side.SHORT)]

    def test_flip_entry_gated_by_rsi(self):
        snap = snapshot(st=98, atr=1.0, rsi=45, bullish=True, trend_changed=True)
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_no_entry_without_flip(self):
        # an EMA golden cross alone does not enter this variant
        snap = snapshot(fast=101, slow=100, st=98, atr=1.0, rsi=60, bullish=True, prev=dict(fast=99, slow=100))
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_undefined_supertrend_gives_no_signal(self):
        snap = snapshot(st=None, atr=1.0, rsi=60, bullish=True, trend_changed=True)
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_pyramid_on_expansion(self):
        snap = snapshot(st=98, atr=1.3, rsi=60, bullish=True)
        signals = self.rule.evaluate(self.cfg, snap, long_position(lots=1, max_lots=4, last_atr=1.0))
        assert [(s.kind, s.reason) for s in signals] == [(SignalKind.PYRAMID, "ATR_EXPANSION")]

    def test_no_pyramid_against_supertrend(self):
        snap = snapshot(st=102, atr=1.3, rsi=60, bullish=False)
        assert self.rule.evaluate(self.cfg, snap, long_position(lots=1, max_lots=4, last_atr=1.0)) == []

    def test_atr_decline_exits_one_lot(self):
        snap = snapshot(st=98, atr=0.8, rsi=60, bullish=True)
        signals = self.rule.evaluate(self.cfg, snap, long_position(lots=2, last_atr=1.0))
        assert len(signals) == 1
        assert signals[0].kind == SignalKind.EXIT
        assert signals[0].reason == "ATR_DECLINE"
        assert signals[0].close_all is False

    def test_opposite_flip_flattens(self):
        snap = snapshot(st=102, atr=1.5, rsi=60, bullish=False, trend_changed=True)
        signals = self.rule.evaluate(self.cfg, snap, long_position(lots=2, last_atr=1.0))
        assert [(s.reason, s.close_all) for s in signals] == [("SUPERTREND_FLIP", True)]

    def test_rsi_exit_flattens(self):
        cfg = AtrPyramidConfig(rsi_exit_long=40)
        snap = snapshot(st=98, atr=1.0, rsi=35, bullish=True)
        signals = self.rule.evaluate(cfg, snap, long_position(lots=1, last_atr=1.0))
        assert [(s.reason, s.close_all) for s in signals] == [("RSI_EXIT", True)]


class TestSupertrendTrend:
    """Price-action trend following."""

    rule = SupertrendTrendRule()
    cfg = SupertrendTrendConfig(trend_period=50, pyramiding_enabled=True, max_lots=3, pyramid_step_pct=0.02)

    def test_bullish_flip_above_trend_enters_long(self):
        snap = snapshot(close=105, slow=100, st=101, bullish=True, trend_changed=True)
        signals = self.rule.evaluate(self.cfg, snap, PositionState())
        assert [(s.kind, s.direction) for s in signals] == [(SignalKind.ENTRY, Side.LONG)]

    def test_flip_against_trend_filter_is_ignored(self):
        snap = snapshot(close=95, slow=100, st=94, bullish=True, trend_changed=True)
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_no_entry_without_flip(self):
        snap = snapshot(close=105, slow=100, st=101, bullish=True, trend_changed=False)
        assert self.rule.evaluate(self.cfg, snap, PositionState()) == []

    def test_trend_break_exits(self):
        snap = snapshot(close=99, slow=100, st=97, bullish=True)
        signals = self.rule.evaluate(self.cfg, snap, long_position(lots=1, last_price=104))
        assert [(s.reason, s.close_all) for s in signals] == [("TREND_BREAK", True)]

    def test_price_step_pyramid(self):
        snap = snapshot(close=103, slow=100, st=99, bullish=True)
        signals = self.rule.evaluate(self.cfg, snap, long_position(lots=1, last_price=100))
        assert [s.kind for s in signals] == [SignalKind.PYRAMID]

    def test_short_side_mirror(self):
        snap = snapshot(close=95, slow=100, st=99, bullish=False, trend_changed=True)
        signals = self.rule.evaluate(self.cfg, snap, PositionState())
        assert [(s.kind, s.direction) for s in signals] == [(SignalKind.ENTRY, Side.SHORT)]


class TestRegistry:
    """Name-keyed dispatch."""

    def test_registry_names(self):
        assert set(STRATEGY_REGISTRY) == {"ema_crossover", "atr_pyramid", "supertrend_trend"}

    def test_build_strategy(self):
        assert isinstance(build_strategy("EMA_CROSSOVER"), EmaCrossoverRule)

    def test_unknown_strategy(self):
        with pytest.raises(InvalidConfig):
            build_strategy("moon_phase")

    def test_strategy_for_config(self):
        assert isinstance(strategy_for_config(AtrPyramidConfig()), AtrPyramidRule)
        assert isinstance(strategy_for_config(SupertrendTrendConfig()), SupertrendTrendRule)
