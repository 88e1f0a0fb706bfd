from __future__ import annotations

from typing import Dict, List, Optional, Type

from quantreplay.core.errors import InvalidConfig
from quantreplay.core.types import PositionState, Side, Signal, SignalKind
from quantreplay.indicators.engine import ATR_VALUE, EMA_FAST, EMA_SLOW, RSI_VALUE, SUPERTREND, IndicatorSnapshot
from quantreplay.strategy.config import (
    AtrPyramidConfig,
    EmaCrossoverConfig,
    StrategyConfig,
    SupertrendTrendConfig,
)


def pct_change(current: float, reference: float) -> Optional[float]:
    """(current - reference) / reference, None when the reference is unusable."""
    if reference is None or float(reference) == 0.0:
        return None
    return (float(current) - float(reference)) / float(reference)


class StrategyRule:
    """Pure signal generator: (config, snapshot, position) -> signals.

    Implementations must not keep state between calls. Everything a rule
    needs about the past is either in the snapshot (one candle back) or in
    the position state owned by the ledger.
    """

    name: str = ""
    config_cls: Type[StrategyConfig] = StrategyConfig

    def evaluate(self, config: StrategyConfig, snapshot: IndicatorSnapshot, position: PositionState) -> List[Signal]:
        raise NotImplementedError

    # -------------------- helpers --------------------
    @staticmethod
    def _signal(
        kind: SignalKind,
        side: Side,
        snapshot: IndicatorSnapshot,
        reason: str,
        quantity: float = 1.0,
        close_all: bool = False,
    ) -> Signal:
        return Signal(
            kind=kind,
            direction=side,
            price=float(snapshot.close),
            timestamp=snapshot.timestamp,
            reason=reason,
            quantity=float(quantity),
            close_all=close_all,
            reference_atr=snapshot.atr,
        )

    @staticmethod
    def _rsi_entry_allows(side: Side, rsi: Optional[float], long_thr: float, short_thr: float) -> bool:
        # threshold 0 -> filter disabled
        if side == Side.LONG:
            return long_thr <= 0 or (rsi is not None and rsi > long_thr)
        if side == Side.SHORT:
            return short_thr <= 0 or (rsi is not None and rsi < short_thr)
        return False

    @staticmethod
    def _rsi_exit_hit(side: Side, rsi: Optional[float], long_thr: float, short_thr: float) -> bool:
        if rsi is None:
            return False
        if side == Side.LONG:
            return long_thr > 0 and rsi < long_thr
        if side == Side.SHORT:
            return short_thr > 0 and rsi > short_thr
        return False

    @staticmethod
    def _atr_change(snapshot: IndicatorSnapshot, position: PositionState) -> Optional[float]:
        if snapshot.atr is None or position.last_entry_atr is None:
            return None
        return pct_change(snapshot.atr, position.last_entry_atr)


# ============================================================
# EMA crossover + RSI filter
# ============================================================


class EmaCrossoverRule(StrategyRule):
    name = EmaCrossoverConfig.STRATEGY
    config_cls = EmaCrossoverConfig

    required = (EMA_FAST, EMA_SLOW)

    def _required(self, config: EmaCrossoverConfig) -> tuple:
        req = list(self.required)
        if config.rsi_period is not None and (config.rsi_entry_long or config.rsi_entry_short):
            req.append(RSI_VALUE)
        return tuple(req)

    def evaluate(self, config: EmaCrossoverConfig, snapshot: IndicatorSnapshot, position: PositionState) -> List[Signal]:
        if not snapshot.ready or not snapshot.is_defined(*self._required(config)):
            return []

        golden = snapshot.crossed_above(EMA_FAST, EMA_SLOW)
        dead = snapshot.crossed_below(EMA_FAST, EMA_SLOW)

        if position.is_flat:
            return self._entries(config, snapshot, golden, dead)

        exits = self._exits(config, snapshot, position, golden, dead)
        if exits:
            # exit beats pyramid on the same candle
            return exits
        return self._pyramids(config, snapshot, position)

    def _entries(self, config: EmaCrossoverConfig, snapshot: IndicatorSnapshot, golden: bool, dead: bool) -> List[Signal]:
        rsi = snapshot.rsi
        if golden and self._rsi_entry_allows(Side.LONG, rsi, config.rsi_entry_long, config.rsi_entry_short):
            return [self._signal(SignalKind.ENTRY, Side.LONG, snapshot, "EMA_GOLDEN_CROSS", config.position_size)]
        if dead and self._rsi_entry_allows(Side.SHORT, rsi, config.rsi_entry_long, config.rsi_entry_short):
            return [self._signal(SignalKind.ENTRY, Side.SHORT, snapshot, "EMA_DEAD_CROSS", config.position_size)]
        return []

    def _exits(
        self,
        config: EmaCrossoverConfig,
        snapshot: IndicatorSnapshot,
        position: PositionState,
        golden: bool,
        dead: bool,
    ) -> List[Signal]:
        side = position.direction
        if side == Side.LONG and dead:
            return [self._signal(SignalKind.EXIT, side, snapshot, "OPPOSITE_CROSSOVER", close_all=True)]
        if side == Side.SHORT and golden:
            return [self._signal(SignalKind.EXIT, side, snapshot, "OPPOSITE_CROSSOVER", close_all=True)]
        if self._rsi_exit_hit(side, snapshot.rsi, config.rsi_exit_long, config.rsi_exit_short):
            return [self._signal(SignalKind.EXIT, side, snapshot, "RSI_EXIT", close_all=True)]
        return []

    def _trend_agrees(self, side: Side, snapshot: IndicatorSnapshot) -> bool:
        fast, slow = snapshot.fast_ema, snapshot.slow_ema
        if fast is None or slow is None:
            return False
        return fast > slow if side == Side.LONG else fast < slow

    def _pyramids(self, config: EmaCrossoverConfig, snapshot: IndicatorSnapshot, position: PositionState) -> List[Signal]:
        if not config.pyramiding_enabled or not position.can_pyramid:
            return []
        change = self._atr_change(snapshot, position)
        if change is None or not change > float(config.atr_expansion_threshold):
            return []
        if not self._trend_agrees(position.direction, snapshot):
            return []
        return [
            self._signal(SignalKind.PYRAMID, position.direction, snapshot, "ATR_EXPANSION", config.position_size)
        ]


# ============================================================
# Supertrend flips + volatility-expansion pyramiding
# ============================================================


class AtrPyramidRule(StrategyRule):
    name = AtrPyramidConfig.STRATEGY
    config_cls = AtrPyramidConfig

    required = (ATR_VALUE, SUPERTREND)

    def evaluate(self, config: AtrPyramidConfig, snapshot: IndicatorSnapshot, position: PositionState) -> List[Signal]:
        if not snapshot.ready or not snapshot.is_defined(*self.required) or snapshot.supertrend_bullish is None:
            return []
        bullish = bool(snapshot.supertrend_bullish)

        if position.is_flat:
            if not snapshot.trend_changed:
                return []
            side = Side.LONG if bullish else Side.SHORT
            if not self._rsi_entry_allows(side, snapshot.rsi, config.rsi_entry_long, config.rsi_entry_short):
                return []
            return [self._signal(SignalKind.ENTRY, side, snapshot, "SUPERTREND_FLIP", config.position_size)]

        side = position.direction
        if snapshot.trend_changed and bullish != (side == Side.LONG):
            return [self._signal(SignalKind.EXIT, side, snapshot, "SUPERTREND_FLIP", close_all=True)]
        if self._rsi_exit_hit(side, snapshot.rsi, config.rsi_exit_long, config.rsi_exit_short):
            return [self._signal(SignalKind.EXIT, side, snapshot, "RSI_EXIT", close_all=True)]

        change = self._atr_change(snapshot, position)
        if change is None:
            return []
        if change < -float(config.atr_decline_threshold):
            # volatility faded: unwind one lot
            return [self._signal(SignalKind.EXIT, side, snapshot, "ATR_DECLINE")]
        if (
            config.pyramiding_enabled
            and position.can_pyramid
            and change > float(config.atr_expansion_threshold)
            and bullish == (side == Side.LONG)
        ):
            return [self._signal(SignalKind.PYRAMID, side, snapshot, "ATR_EXPANSION", config.position_size)]
        return []


# ============================================================
# Price action / trend following (Supertrend + slow EMA)
# ============================================================


class SupertrendTrendRule(StrategyRule):
    name = SupertrendTrendConfig.STRATEGY
    config_cls = SupertrendTrendConfig

    def evaluate(self, config: SupertrendTrendConfig, snapshot: IndicatorSnapshot, position: PositionState) -> List[Signal]:
        if not snapshot.ready or snapshot.supertrend_bullish is None:
            return []
        trend = snapshot.slow_ema
        if config.trend_period is not None and trend is None:
            return []

        close = float(snapshot.close)
        bullish = bool(snapshot.supertrend_bullish)

        if position.is_flat:
            if not snapshot.trend_changed:
                return []
            side = Side.LONG if bullish else Side.SHORT
            if trend is not None and not (close > trend if side == Side.LONG else close < trend):
                return []
            if not self._rsi_entry_allows(side, snapshot.rsi, config.rsi_entry_long, config.rsi_entry_short):
                return []
            return [self._signal(SignalKind.ENTRY, side, snapshot, "SUPERTREND_FLIP", config.position_size)]

        side = position.direction
        if snapshot.trend_changed and bullish != (side == Side.LONG):
            return [self._signal(SignalKind.EXIT, side, snapshot, "SUPERTREND_FLIP", close_all=True)]
        if config.exit_on_trend_break and trend is not None:
            broke = close < trend if side == Side.LONG else close > trend
            if broke:
                return [self._signal(SignalKind.EXIT, side, snapshot, "TREND_BREAK", close_all=True)]

        if config.pyramiding_enabled and position.can_pyramid and position.last_entry_price:
            move = pct_change(close, position.last_entry_price)
            if move is not None:
                favourable = move if side == Side.LONG else -move
                if favourable > float(config.pyramid_step_pct):
                    return [self._signal(SignalKind.PYRAMID, side, snapshot, "PRICE_STEP", config.position_size)]
        return []


STRATEGY_REGISTRY: Dict[str, Type[StrategyRule]] = {
    EmaCrossoverRule.name: EmaCrossoverRule,
    AtrPyramidRule.name: AtrPyramidRule,
    SupertrendTrendRule.name: SupertrendTrendRule,
}


def build_strategy(name: str) -> StrategyRule:
    try:
        return STRATEGY_REGISTRY[str(name).strip().lower()]()
    except KeyError:
        raise InvalidConfig(f"Unknown strategy: {name!r}. Known: {sorted(STRATEGY_REGISTRY)}") from None


def config_class_for(name: str) -> Type[StrategyConfig]:
    try:
        return STRATEGY_REGISTRY[str(name).strip().lower()].config_cls
    except KeyError:
        raise InvalidConfig(f"Unknown strategy: {name!r}. Known: {sorted(STRATEGY_REGISTRY)}") from None


def strategy_for_config(config: StrategyConfig) -> StrategyRule:
    rule = build_strategy(config.STRATEGY)
    if not isinstance(config, rule.config_cls):
        raise InvalidConfig(f"{type(config).__name__} cannot drive strategy {rule.name!r}")
    return rule
