from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from quantreplay.backtest.engine import BacktestConfig, BacktestOrchestrator, BacktestResult
from quantreplay.data_loader import CandleSource

logger = logging.getLogger(__name__)

MAX_WORKERS = 4


def run_batch(
    configs: Sequence[BacktestConfig],
    candle_source: CandleSource,
    max_workers: Optional[int] = None,
) -> List[BacktestResult]:
    """Run independent backtests concurrently.

    Each job gets its own orchestrator run (own IndicatorEngine, strategy and
    PositionLedger), so jobs share nothing but the read-only candle source.
    Results come back in the order of `configs`. The first failing job's
    exception is re-raised.
    """

    if not configs:
        return []
    workers = max(1, min(int(max_workers or MAX_WORKERS), len(configs)))
    logger.info("Running %d backtests on %d workers", len(configs), workers)

    def _run(cfg: BacktestConfig) -> BacktestResult:
        return BacktestOrchestrator(candle_source).run(cfg)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_run, configs))
