"""Deterministic candle-replay backtesting.

Two concepts carry most of the weight:

- **IndicatorEngine**: incremental, look-ahead free indicators. Values are
  `None` until warm-up is satisfied, never 0.
- **PositionLedger**: open lots per instrument with FIFO/LIFO unwinds and
  per-lot stops. Every closed lot becomes one immutable Trade.

`BacktestOrchestrator` wires them to a strategy from the registry and hands
the ledger to `MetricsCalculator`.
"""

__version__ = "0.1.0"

from quantreplay.backtest.engine import BacktestConfig, BacktestOrchestrator, BacktestResult
from quantreplay.backtest.ledger import PositionLedger
from quantreplay.backtest.metrics import MetricsCalculator
from quantreplay.indicators.engine import IndicatorEngine

__all__ = [
    "BacktestConfig",
    "BacktestOrchestrator",
    "BacktestResult",
    "IndicatorEngine",
    "MetricsCalculator",
    "PositionLedger",
]
