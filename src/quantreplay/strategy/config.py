from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Optional

from quantreplay.core.errors import InvalidConfig
from quantreplay.core.types import TrailingStopType, UnwindMode
from quantreplay.indicators.engine import IndicatorSettings

MIN_PERIOD = 1
MAX_PERIOD = 200


def _check_period(name: str, value: Optional[int], required: bool = True) -> None:
    if value is None:
        if required:
            raise InvalidConfig(f"{name} is required")
        return
    if isinstance(value, bool) or int(value) != value:
        raise InvalidConfig(f"{name} must be an integer, got {value!r}")
    if not MIN_PERIOD <= int(value) <= MAX_PERIOD:
        raise InvalidConfig(f"{name} must be between {MIN_PERIOD} and {MAX_PERIOD}, got {value}")


def _check_fraction(name: str, value: Optional[float], *, allow_zero: bool = True, upper: Optional[float] = None) -> None:
    if value is None:
        return
    v = float(value)
    if v < 0 or (v == 0 and not allow_zero):
        raise InvalidConfig(f"{name} must be {'>=' if allow_zero else '>'} 0, got {value}")
    if upper is not None and v >= upper:
        raise InvalidConfig(f"{name} must be < {upper}, got {value}")


def _check_rsi_level(name: str, value: float) -> None:
    # 0 disables the threshold
    if not 0.0 <= float(value) <= 100.0:
        raise InvalidConfig(f"{name} must be within [0, 100], got {value}")


def _check_rsi_thresholds(cfg: Any, *names: str) -> None:
    for name in names:
        _check_rsi_level(name, getattr(cfg, name))
    if cfg.rsi_period is None and any(float(getattr(cfg, n)) > 0 for n in names):
        raise InvalidConfig(f"RSI thresholds require rsi_period (set {', '.join(names)} to 0 to disable)")


@dataclass(frozen=True)
class StrategyConfig:
    """Fields shared by every strategy variant.

    Fractions everywhere (0.08 = 8%). Set `stop_loss_pct=None` to disable the
    fixed stop and `trailing_stop_type=OFF` to disable trailing.
    """

    STRATEGY: ClassVar[str] = ""

    # sizing / pyramiding
    position_size: float = 1.0
    max_lots: int = 1
    pyramiding_enabled: bool = False
    unwind_mode: UnwindMode = UnwindMode.FIFO

    # oscillator / volatility periods
    rsi_period: Optional[int] = 14
    atr_period: Optional[int] = 14

    # per-lot stops
    stop_loss_pct: Optional[float] = None
    trailing_stop_type: TrailingStopType = TrailingStopType.OFF
    trailing_stop_pct: float = 0.02
    trailing_stop_atr_multiplier: float = 2.0
    trailing_activation_pct: float = 0.0

    @property
    def strategy(self) -> str:
        return self.STRATEGY

    def indicator_settings(self) -> IndicatorSettings:
        raise NotImplementedError

    def validate(self) -> "StrategyConfig":
        """Raise InvalidConfig on the first malformed or contradictory field."""
        if float(self.position_size) <= 0:
            raise InvalidConfig(f"position_size must be > 0, got {self.position_size}")
        if isinstance(self.max_lots, bool) or int(self.max_lots) != self.max_lots or int(self.max_lots) < 1:
            raise InvalidConfig(f"max_lots must be an integer >= 1, got {self.max_lots}")
        if not isinstance(self.unwind_mode, UnwindMode):
            raise InvalidConfig(f"unwind_mode must be FIFO or LIFO, got {self.unwind_mode!r}")
        if not isinstance(self.trailing_stop_type, TrailingStopType):
            raise InvalidConfig(f"Unknown trailing_stop_type {self.trailing_stop_type!r}")

        _check_period("rsi_period", self.rsi_period, required=False)
        _check_period("atr_period", self.atr_period, required=False)
        _check_fraction("stop_loss_pct", self.stop_loss_pct, allow_zero=False, upper=1.0)
        _check_fraction("trailing_activation_pct", self.trailing_activation_pct)

        if self.trailing_stop_type == TrailingStopType.PERCENTAGE:
            _check_fraction("trailing_stop_pct", self.trailing_stop_pct, allow_zero=False, upper=1.0)
        if self.trailing_stop_type == TrailingStopType.ATR:
            if self.atr_period is None:
                raise InvalidConfig("ATR trailing stop requires atr_period")
            _check_fraction("trailing_stop_atr_multiplier", self.trailing_stop_atr_multiplier, allow_zero=False)
        return self

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"strategy": self.STRATEGY}
        for f in fields(self):
            v = getattr(self, f.name)
            out[f.name] = v.value if hasattr(v, "value") else v
        return out


@dataclass(frozen=True)
class EmaCrossoverConfig(StrategyConfig):
    """Fast/slow EMA crossover with an RSI directional filter.

    RSI thresholds of 0 disable the corresponding check:
      - LONG entry requires RSI > rsi_entry_long
      - SHORT entry requires RSI < rsi_entry_short
      - LONG exit when RSI < rsi_exit_long, SHORT exit when RSI > rsi_exit_short
    """

    STRATEGY: ClassVar[str] = "ema_crossover"

    fast_period: int = 9
    slow_period: int = 21
    rsi_entry_long: float = 50.0
    rsi_entry_short: float = 50.0
    rsi_exit_long: float = 0.0
    rsi_exit_short: float = 0.0

    # pyramid when (atr - atr_at_last_entry) / atr_at_last_entry > threshold
    atr_expansion_threshold: float = 0.0

    def indicator_settings(self) -> IndicatorSettings:
        return IndicatorSettings(
            fast_period=self.fast_period,
            slow_period=self.slow_period,
            atr_period=self.atr_period,
            rsi_period=self.rsi_period,
        )
    def validate(self) -> "EmaCrossoverConfig":
        super().validate()
        _check_period("fast_period", self.fast_period)
        _check_period("slow_period", self.slow_period)
        if int(self.fast_period) >= int(self.slow_period):
            raise InvalidConfig(f"fast_period ({self.fast_period}) must be < slow_period ({self.slow_period})")
        _check_rsi_thresholds(self, "rsi_entry_long", "rsi_entry_short", "rsi_exit_long", "rsi_exit_short")
        _check_fraction("atr_expansion_threshold", self.atr_expansion_threshold)
        if self.pyramiding_enabled and self.atr_period is None:
            raise InvalidConfig("pyramiding requires atr_period")
        return self


@dataclass(frozen=True)
class AtrPyramidConfig(StrategyConfig):
    """Supertrend flip entries with volatility-expansion pyramiding.

    - ENTRY on a Supertrend flip, LONG when RSI > rsi_entry_long, SHORT when
      RSI < rsi_entry_short (0 disables the filter)
    - PYRAMID while ATR expanded more than `atr_expansion_threshold` vs the ATR
      at the last entry and Supertrend still agrees
    - EXIT one lot once ATR declined more than `atr_decline_threshold`
    - an opposite flip or the RSI exit flattens
    """

    STRATEGY: ClassVar[str] = "atr_pyramid"

    max_lots: int = 4
    pyramiding_enabled: bool = True

    supertrend_period: int = 10
    supertrend_multiplier: float = 3.0

    rsi_entry_long: float = 50.0
    rsi_entry_short: float = 50.0
    rsi_exit_long: float = 0.0
    rsi_exit_short: float = 0.0

    atr_expansion_threshold: float = 0.10
    atr_decline_threshold: float = 0.10

    def indicator_settings(self) -> IndicatorSettings:
        return IndicatorSettings(
            fast_period=None,
            slow_period=None,
            atr_period=self.atr_period,
            rsi_period=self.rsi_period,
            supertrend_period=self.supertrend_period,
            supertrend_multiplier=self.supertrend_multiplier,
        )

    def validate(self) -> "AtrPyramidConfig":
        super().validate()
        if self.atr_period is None:
            raise InvalidConfig("atr_pyramid requires atr_period")
        _check_period("supertrend_period", self.supertrend_period)
        _check_fraction("supertrend_multiplier", self.supertrend_multiplier, allow_zero=False)
        _check_rsi_thresholds(self, "rsi_entry_long", "rsi_entry_short", "rsi_exit_long", "rsi_exit_short")
        _check_fraction("atr_expansion_threshold", self.atr_expansion_threshold)
        _check_fraction("atr_decline_threshold", self.atr_decline_threshold, upper=1.0)
        return self


@dataclass(frozen=True)
class SupertrendTrendConfig(StrategyConfig):
    """Price-action trend following: Supertrend flips filtered by a slow EMA.

    `trend_period=None` disables the EMA filter. Pyramids are added when
    close moved more than `pyramid_step_pct` beyond the last entry price.
    """

    STRATEGY: ClassVar[str] = "supertrend_trend"

    supertrend_period: int = 10
    supertrend_multiplier: float = 3.0
    trend_period: Optional[int] = 50
    pyramid_step_pct: float = 0.02
    exit_on_trend_break: bool = True

    rsi_period: Optional[int] = None
    rsi_entry_long: float = 0.0
    rsi_entry_short: float = 0.0

    def indicator_settings(self) -> IndicatorSettings:
        return IndicatorSettings(
            fast_period=None,
            slow_period=self.trend_period,
            atr_period=self.atr_period,
            rsi_period=self.rsi_period,
            supertrend_period=self.supertrend_period,
            supertrend_multiplier=self.supertrend_multiplier,
        )

    def validate(self) -> "SupertrendTrendConfig":
        super().validate()
        _check_period("supertrend_period", self.supertrend_period)
        _check_period("trend_period", self.trend_period, required=False)
        _check_fraction("supertrend_multiplier", self.supertrend_multiplier, allow_zero=False)
        _check_fraction("pyramid_step_pct", self.pyramid_step_pct, allow_zero=False)
        _check_rsi_thresholds(self, "rsi_entry_long", "rsi_entry_short")
        return self
