from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from quantreplay.core.errors import InvalidConfig
from quantreplay.core.types import EquityPoint, Trade

# Trading-session periods per year (252 sessions x 6.5h for intraday bars).
PERIODS_PER_YEAR: Dict[str, float] = {
    "1m": 98280.0,
    "5m": 19656.0,
    "15m": 6552.0,
    "30m": 3276.0,
    "1h": 1638.0,
    "4h": 409.5,
    "1d": 252.0,
    "1w": 52.0,
}

# Profit factor reported when there are winners but no losers.
PROFIT_FACTOR_NO_LOSSES = 1e6


def periods_per_year(timeframe: str) -> float:
    try:
        return PERIODS_PER_YEAR[str(timeframe).strip().lower()]
    except KeyError:
        raise InvalidConfig(f"Unsupported timeframe {timeframe!r}. Supported: {sorted(PERIODS_PER_YEAR)}") from None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


@dataclass(frozen=True)
class PerformanceMetrics:
    """Summary statistics of one run. Ratios and returns are fractions."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    break_even_trades: int = 0
    total_return: float = 0.0
    total_return_percentage: float = 0.0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    profit_factor: float = 0.0
    profit_factor_status: str = "no_trades"
    max_drawdown: float = 0.0
    max_drawdown_duration: int = 0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    recovery_factor: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0
    var_95: float = 0.0
    var_99: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    average_trade_duration: float = 0.0
    total_commission: float = 0.0
    final_equity: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): v for k, v in asdict(self).items()}


def _finite(x: float) -> float:
    x = float(x)
    return x if math.isfinite(x) else 0.0


def max_drawdown(equity: Sequence[float]) -> Tuple[float, int]:
    """Max peak-to-trough decline as a fraction of the running peak.

    Single forward scan. Also returns the longest stretch (in bars) spent
    below a previous peak.
    """

    peak: Optional[float] = None
    mdd = 0.0
    underwater = 0
    longest = 0
    for v in equity:
        v = float(v)
        if peak is None or v >= peak:
            peak = v
            underwater = 0
            continue
        underwater += 1
        longest = max(longest, underwater)
        if peak > 0:
            mdd = max(mdd, (peak - v) / peak)
    return mdd, longest


def _max_drawdown_amount(equity: Sequence[float]) -> float:
    peak: Optional[float] = None
    worst = 0.0
    for v in equity:
        v = float(v)
        peak = v if peak is None else max(peak, v)
        worst = max(worst, peak - v)
    return worst


def _streaks(pnls: Sequence[float]) -> Tuple[int, int]:
    best_w = best_l = cur_w = cur_l = 0
    for p in pnls:
        if p > 0:
            cur_w, cur_l = cur_w + 1, 0
        elif p < 0:
            cur_w, cur_l = 0, cur_l + 1
        else:
            cur_w = cur_l = 0
        best_w, best_l = max(best_w, cur_w), max(best_l, cur_l)
    return best_w, best_l


def profit_factor(pnls: Sequence[float]) -> Tuple[float, str]:
    """Gross profit / |gross loss| with finite values for the degenerate cases.

    - no trades, or no winners          -> 0.0
    - winners but no losers             -> PROFIT_FACTOR_NO_LOSSES ("no_losses")
    """

    if len(pnls) == 0:
        return 0.0, "no_trades"
    gross_win = float(sum(p for p in pnls if p > 0))
    gross_loss = float(-sum(p for p in pnls if p < 0))
    if gross_loss == 0.0:
        if gross_win > 0:
            return PROFIT_FACTOR_NO_LOSSES, "no_losses"
        return 0.0, "no_wins"
    return gross_win / gross_loss, "ok"


class MetricsCalculator:
    """Pure function of (trades, equity curve, initial balance, timeframe).

    Everything is derived from the trade ledger and the equity curve, never
    from raw candles. Degenerate divisions resolve to 0.0 (or the profit
    factor sentinel), never NaN or infinity.
    """

    def __init__(self, timeframe: str = "1d"):
        self.timeframe = str(timeframe)
        self.periods_per_year = periods_per_year(timeframe)

    def compute(self, trades: Sequence[Trade], equity_curve: Sequence[EquityPoint], initial_balance: float) -> PerformanceMetrics:
        initial = float(initial_balance)
        equity = pd.Series([float(p.equity) for p in equity_curve], dtype=float)
        final = float(equity.iloc[-1]) if len(equity) else initial

        pnls = [float(t.pnl) for t in trades]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        n = len(pnls)
        pf, pf_status = profit_factor(pnls)
        best_w, best_l = _streaks(pnls)

        total_return = final - initial
        total_return_pct = total_return / initial if initial else 0.0

        mdd, mdd_bars = max_drawdown(equity.tolist())
        mdd_amount = _max_drawdown_amount(equity.tolist())

        rets = equity.pct_change().replace([np.inf, -np.inf], np.nan).dropna() if len(equity) > 1 else pd.Series(dtype=float)
        ppy = self.periods_per_year
        sharpe = sortino = vol = var95 = var99 = 0.0
        if len(rets) >= 2:
            mean = float(rets.mean())
            std = float(rets.std(ddof=0))
            if std > 0:
                sharpe = mean / std * math.sqrt(ppy)
                vol = std * math.sqrt(ppy)
            downside = float(np.sqrt(np.mean(np.minimum(rets.to_numpy(), 0.0) ** 2)))
            if downside > 0:
                sortino = mean / downside * math.sqrt(ppy)
        if len(rets) >= 1:
            var95 = max(0.0, -float(np.percentile(rets.to_numpy(), 5)))
            var99 = max(0.0, -float(np.percentile(rets.to_numpy(), 1)))

        annualized = 0.0
        if initial > 0 and len(equity) > 0:
            growth = final / initial
            if growth <= 0:
                annualized = -1.0
            else:
                exponent = math.log(growth) * ppy / len(equity)
                # short intraday samples explode when compounded to a year
                annualized = math.expm1(exponent) if exponent < 700.0 else 0.0

        durations = [t.duration_seconds for t in trades]

        return PerformanceMetrics(
            total_trades=n,
            winning_trades=len(wins),
            losing_trades=len(losses),
            break_even_trades=n - len(wins) - len(losses),
            total_return=_finite(total_return),
            total_return_percentage=_finite(total_return_pct),
            win_rate=len(wins) / n if n else 0.0,
            average_win=float(np.mean(wins)) if wins else 0.0,
            average_loss=float(np.mean(losses)) if losses else 0.0,
            largest_win=max(wins) if wins else 0.0,
            largest_loss=min(losses) if losses else 0.0,
            profit_factor=_finite(pf),
            profit_factor_status=pf_status,
            max_drawdown=_finite(mdd),
            max_drawdown_duration=int(mdd_bars),
            sharpe_ratio=_finite(sharpe),
            sortino_ratio=_finite(sortino),
            calmar_ratio=_finite(annualized / mdd) if mdd > 0 else 0.0,
            recovery_factor=_finite(total_return / mdd_amount) if mdd_amount > 0 else 0.0,
            annualized_return=_finite(annualized),
            volatility=_finite(vol),
            var_95=_finite(var95),
            var_99=_finite(var99),
            max_consecutive_wins=best_w,
            max_consecutive_losses=best_l,
            average_trade_duration=float(np.mean(durations)) if durations else 0.0,
            total_commission=float(sum(t.commission for t in trades)),
            final_equity=_finite(final),
        )


def check_conservation(trades: Sequence[Trade], final_equity: float, initial_balance: float, tol: float = 1e-6) -> bool:
    """sum(trade pnl) == final equity - initial balance - commissions.

    Only meaningful once every lot is closed.
    """
    pnl = sum(float(t.pnl) for t in trades)
    commission = sum(float(t.commission) for t in trades)
    expected = float(final_equity) - float(initial_balance)
    return abs(pnl - commission - expected) <= tol * max(1.0, abs(float(initial_balance)))


def format_summary(metrics: PerformanceMetrics, title: str = "Backtest summary") -> str:
    m = metrics
    lines: List[str] = [title, "-" * len(title)]
    lines.append(f"Trades        : {m.total_trades} (W {m.winning_trades} / L {m.losing_trades} / BE {m.break_even_trades})")
    lines.append(f"Total return  : {m.total_return:,.2f} ({m.total_return_percentage:.2%})")
    lines.append(f"Final equity  : {m.final_equity:,.2f}")
    lines.append(f"Win rate      : {m.win_rate:.2%}")
    pf = "no losses" if m.profit_factor_status == "no_losses" else f"{m.profit_factor:.3f}"
    lines.append(f"Profit factor : {pf}")
    lines.append(f"Avg win/loss  : {m.average_win:,.2f} / {m.average_loss:,.2f}")
    lines.append(f"Max drawdown  : {m.max_drawdown:.2%} ({m.max_drawdown_duration} bars)")
    lines.append(f"Sharpe/Sortino: {m.sharpe_ratio:.3f} / {m.sortino_ratio:.3f}")
    lines.append(f"Calmar        : {m.calmar_ratio:.3f}")
    lines.append(f"VaR 95/99     : {m.var_95:.2%} / {m.var_99:.2%}")
    lines.append(f"Commission    : {m.total_commission:,.2f}")
    return "\n".join(lines)
