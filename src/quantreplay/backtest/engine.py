from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from quantreplay.backtest.ledger import PositionLedger, StopPolicy
from quantreplay.backtest.metrics import (
    PERIODS_PER_YEAR,
    MetricsCalculator,
    PerformanceMetrics,
    check_conservation,
    format_summary,
)
from quantreplay.core.errors import InsufficientData, InvalidConfig, SignalRejected
from quantreplay.core.types import Candle, EquityPoint, RunStatus, Signal, SignalKind, Trade
from quantreplay.data_loader import CandleSource
from quantreplay.execution.executor import OrderExecutor, SimulatedExecutor
from quantreplay.indicators.engine import IndicatorEngine
from quantreplay.strategy.config import StrategyConfig
from quantreplay.strategy.evaluators import StrategyRule, strategy_for_config

logger = logging.getLogger(__name__)

END_OF_DATA = "END_OF_DATA"


@dataclass(frozen=True)
class BacktestConfig:
    symbol: str
    strategy: StrategyConfig
    timeframe: str = "1d"

    # replay window; candles before `start` only warm up indicators
    start: Optional[pd.Timestamp] = None
    end: Optional[pd.Timestamp] = None

    initial_balance: float = 100_000.0

    # simulated execution (used when no executor is injected)
    slippage_pct: float = 0.0
    commission_pct: float = 0.0
    commission_per_order: float = 0.0

    # flatten remaining lots at the last close
    close_at_end: bool = True

    @property
    def start_ts(self) -> Optional[pd.Timestamp]:
        return pd.Timestamp(self.start) if self.start is not None else None

    @property
    def end_ts(self) -> Optional[pd.Timestamp]:
        return pd.Timestamp(self.end) if self.end is not None else None

    def validate(self) -> "BacktestConfig":
        if not str(self.symbol).strip():
            raise InvalidConfig("symbol is required")
        if str(self.timeframe).lower() not in PERIODS_PER_YEAR:
            raise InvalidConfig(f"Unsupported timeframe {self.timeframe!r}. Supported: {sorted(PERIODS_PER_YEAR)}")
        if not float(self.initial_balance) > 0:
            raise InvalidConfig(f"initial_balance must be > 0, got {self.initial_balance}")
        if self.start_ts is not None and self.end_ts is not None and not self.start_ts < self.end_ts:
            raise InvalidConfig(f"start ({self.start}) must be before end ({self.end})")
        if not isinstance(self.strategy, StrategyConfig):
            raise InvalidConfig(f"strategy must be a StrategyConfig, got {type(self.strategy).__name__}")
        self.strategy.validate()
        return self


def _iso(ts: Any) -> str:
    return pd.Timestamp(ts).isoformat()


def trade_to_dict(t: Trade) -> Dict[str, Any]:
    return {
        "symbol": t.symbol,
        "lotId": int(t.lot_id),
        "direction": t.direction.name,
        "entryPrice": float(t.entry_price),
        "entryTimestamp": _iso(t.entry_timestamp),
        "exitPrice": float(t.exit_price),
        "exitTimestamp": _iso(t.exit_timestamp),
        "quantity": float(t.quantity),
        "pnl": float(t.pnl),
        "pnlPercentage": float(t.pnl_percentage),
        "commission": float(t.commission),
        "entryReason": t.entry_reason,
        "exitReason": t.exit_reason,
    }


@dataclass
class BacktestResult:
    config: BacktestConfig
    status: RunStatus
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    metrics: Optional[PerformanceMetrics] = None
    open_lots: int = 0
    rejected_signals: int = 0
    candles_processed: int = 0
    message: str = ""
    journal: str = ""

    def trades_df(self) -> pd.DataFrame:
        return pd.DataFrame([trade_to_dict(t) for t in self.trades])

    def equity_df(self) -> pd.DataFrame:
        df = pd.DataFrame({"timestamp": [p.timestamp for p in self.equity_curve], "equity": [p.equity for p in self.equity_curve]})
        return df.set_index("timestamp")

    def summary(self) -> str:
        title = f"{self.config.symbol} {self.config.timeframe} {self.config.strategy.strategy}"
        if self.status != RunStatus.OK or self.metrics is None:
            return f"{title}\nstatus={self.status.value} {self.message}".rstrip()
        return format_summary(self.metrics, title=title)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable result. Returns and ratios are fractions (0.05 = 5%)."""
        metrics = self.metrics or PerformanceMetrics(final_equity=float(self.config.initial_balance))
        out: Dict[str, Any] = {
            "status": self.status.value,
            "symbol": self.config.symbol,
            "timeframe": self.config.timeframe,
            "strategy": self.config.strategy.strategy,
            "initialBalance": float(self.config.initial_balance),
            "openLots": int(self.open_lots),
            "rejectedSignals": int(self.rejected_signals),
            "message": self.message,
        }
        out.update(metrics.to_dict())
        out["trades"] = [trade_to_dict(t) for t in self.trades]
        out["equityCurve"] = [{"timestamp": _iso(p.timestamp), "equity": float(p.equity)} for p in self.equity_curve]
        return out


class BacktestOrchestrator:
    """Candle replay loop for one symbol/strategy.

    Per candle (strictly in order):
      1) indicators update
      2) per-lot stops (only inside the replay window)
      3) strategy signals -> ledger
      4) equity sample at the close

    Every run builds its own IndicatorEngine and PositionLedger, so one
    orchestrator can be reused and independent runs never share state.
    """

    def __init__(self, candle_source: CandleSource, executor: Optional[OrderExecutor] = None):
        self.candle_source = candle_source
        self.executor = executor

    def _executor_for(self, cfg: BacktestConfig) -> OrderExecutor:
        if self.executor is not None:
            return self.executor
        return SimulatedExecutor(
            slippage_pct=cfg.slippage_pct,
            commission_pct=cfg.commission_pct,
            commission_per_order=cfg.commission_per_order,
        )

    @staticmethod
    def _apply(ledger: PositionLedger, signal: Signal) -> int:
        """Apply one signal; returns the number of rejections (0 or 1)."""
        try:
            if signal.kind == SignalKind.EXIT and signal.close_all:
                while not ledger.is_flat:
                    ledger.apply(signal)
            else:
                ledger.apply(signal)
        except SignalRejected as e:
            logger.warning("%s signal rejected at %s: %s", signal.kind.value, signal.timestamp, e)
            return 1
        return 0

    def run(self, cfg: BacktestConfig) -> BacktestResult:
        cfg.validate()
        strategy_cfg = cfg.strategy
        rule: StrategyRule = strategy_for_config(strategy_cfg)
        engine = IndicatorEngine(strategy_cfg.indicator_settings())
        ledger = PositionLedger(
            cfg.symbol,
            max_lots=strategy_cfg.max_lots,
            unwind_mode=strategy_cfg.unwind_mode,
            executor=self._executor_for(cfg),
            initial_balance=cfg.initial_balance,
            stops=StopPolicy.from_config(strategy_cfg),
        )

        start, end = cfg.start_ts, cfg.end_ts
        candles: List[Candle] = list(self.candle_source.fetch(cfg.symbol, cfg.timeframe, start, end))
        if end is not None:
            candles = [c for c in candles if c.timestamp <= end]
        warmup = engine.warmup_period
        in_window = sum(1 for c in candles if start is None or c.timestamp >= start)
        # with a replay window, only candles before `start` count as warm-up
        warm = len(candles) if start is None else len(candles) - in_window

        logger.info(
            "Backtest %s %s strategy=%s candles=%d (in window %d, warm-up %d of %d)",
            cfg.symbol,
            cfg.timeframe,
            rule.name,
            len(candles),
            in_window,
            warm,
            warmup,
        )

        if warm < warmup or in_window == 0:
            err = InsufficientData(warm, warmup)
            msg = str(err) if in_window else f"{err} (no candles inside the replay window)"
            logger.warning("%s: %s", cfg.symbol, msg)
            return BacktestResult(config=cfg, status=RunStatus.INSUFFICIENT_DATA, message=msg)

        equity: List[EquityPoint] = []
        rejected = 0
        processed = 0
        prev_atr: Optional[float] = None
        for candle in candles:
            snap = engine.update(candle)
            if start is not None and candle.timestamp < start:
                prev_atr = snap.atr
                continue

            # stops use the ATR known before this candle
            ledger.check_stops(candle, atr=prev_atr)

            for signal in rule.evaluate(strategy_cfg, snap, ledger.position_state()):
                rejected += self._apply(ledger, signal)

            equity.append(EquityPoint(timestamp=candle.timestamp, equity=ledger.equity(candle.close)))
            prev_atr = snap.atr
            processed += 1

        last = candles[-1]
        if cfg.close_at_end and not ledger.is_flat:
            ledger.flatten(last.close, last.timestamp, END_OF_DATA)
            equity[-1] = EquityPoint(timestamp=last.timestamp, equity=ledger.equity(last.close))

        metrics = MetricsCalculator(cfg.timeframe).compute(ledger.closed_trades, equity, cfg.initial_balance)
        if ledger.is_flat and not check_conservation(ledger.closed_trades, metrics.final_equity, cfg.initial_balance):
            logger.error("PnL conservation violated for %s: trades do not explain the equity change", cfg.symbol)

        logger.info(
            "Backtest %s done: trades=%d return=%.4f mdd=%.4f rejected=%d",
            cfg.symbol,
            metrics.total_trades,
            metrics.total_return_percentage,
            metrics.max_drawdown,
            rejected,
        )
        return BacktestResult(
            config=cfg,
            status=RunStatus.OK,
            trades=list(ledger.closed_trades),
            equity_curve=equity,
            metrics=metrics,
            open_lots=ledger.lot_count,
            rejected_signals=rejected,
            candles_processed=processed,
            journal=ledger.journal(),
        )
