from __future__ import annotations

import argparse
import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from quantreplay.backtest.batch import run_batch
from quantreplay.backtest.engine import BacktestConfig, BacktestResult
from quantreplay.core.errors import InvalidConfig, QuantReplayError
from quantreplay.data_loader import CsvCandleSource
from quantreplay.strategy.config import StrategyConfig
from quantreplay.strategy.config_io import config_from_dict, load_strategy_configs
from quantreplay.strategy.evaluators import STRATEGY_REGISTRY

logger = logging.getLogger("quantreplay")


def _safe_name(s: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", s).strip("_")


def _parse_params(items: Sequence[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise InvalidConfig(f"--param expects key=value, got {item!r}")
        k, v = item.split("=", 1)
        out[k.strip()] = v.strip()
    return out


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay OHLCV candles through a rule-based strategy and report performance.")
    p.add_argument("--csv", type=str, required=True, help="OHLCV CSV file, or a directory of <symbol>_<timeframe>.csv")
    p.add_argument("--symbol", type=str, required=True)
    p.add_argument("--timeframe", type=str, default="1d")
    p.add_argument("--start", type=str, default=None)
    p.add_argument("--end", type=str, default=None)

    p.add_argument("--strategy", type=str, default="ema_crossover", choices=sorted(STRATEGY_REGISTRY))
    p.add_argument("--param", action="append", default=[], help="Strategy field override, key=value (repeatable)")
    p.add_argument("--config", type=str, default=None, help="CSV/XLSX/JSON of strategy configs (one backtest per row)")
    p.add_argument("--sheet", type=str, default=None)

    p.add_argument("--initial-balance", type=float, default=100_000.0)
    p.add_argument("--slippage-pct", type=float, default=0.0)
    p.add_argument("--commission-pct", type=float, default=0.0)
    p.add_argument("--commission-per-order", type=float, default=0.0)
    p.add_argument("--keep-open", action="store_true", help="Do not flatten open lots at the last candle")

    p.add_argument("--workers", type=int, default=None)
    p.add_argument("--out-dir", type=str, default=None, help="Write result JSON, trades and equity CSVs here")
    p.add_argument("--journal", action="store_true", help="Print the fill/trade journal")
    p.add_argument("--log-level", type=str, default="INFO")
    return p.parse_args(argv)


def _strategy_configs(args: argparse.Namespace) -> List[StrategyConfig]:
    if args.config:
        return load_strategy_configs(args.config, sheet=args.sheet)
    return [config_from_dict(_parse_params(args.param), strategy=args.strategy)]


def _write_outputs(out_dir: Path, idx: int, res: BacktestResult) -> None:
    name = _safe_name(f"{idx:02d}_{res.config.symbol}_{res.config.timeframe}_{res.config.strategy.strategy}")
    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / f"{name}.json").write_text(json.dumps(res.to_dict(), indent=2), encoding="utf-8")
    res.trades_df().to_csv(out_dir / f"{name}_trades.csv", index=False)
    res.equity_df().to_csv(out_dir / f"{name}_equity.csv")
    logger.info("Wrote %s/%s.*", out_dir, name)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        configs = [
            BacktestConfig(
                symbol=args.symbol,
                strategy=s,
                timeframe=args.timeframe,
                start=pd.Timestamp(args.start) if args.start else None,
                end=pd.Timestamp(args.end) if args.end else None,
                initial_balance=float(args.initial_balance),
                slippage_pct=float(args.slippage_pct),
                commission_pct=float(args.commission_pct),
                commission_per_order=float(args.commission_per_order),
                close_at_end=not args.keep_open,
            )
            for s in _strategy_configs(args)
        ]
        results = run_batch(configs, CsvCandleSource(args.csv), max_workers=args.workers)
    except (QuantReplayError, FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return 2

    for i, res in enumerate(results):
        print(res.summary())
        if args.journal and res.journal:
            print(res.journal)
        print()
        if args.out_dir:
            _write_outputs(Path(args.out_dir), i, res)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
