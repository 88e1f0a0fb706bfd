from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

import pandas as pd

from quantreplay.backtest.accounting import Account
from quantreplay.core.errors import CapacityExceeded, DirectionConflict
from quantreplay.core.types import (
    Candle,
    Lot,
    PositionState,
    Side,
    Signal,
    SignalKind,
    Trade,
    TrailingStopType,
    UnwindMode,
)
from quantreplay.execution.executor import OrderExecutor, SimulatedExecutor, order_side

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopPolicy:
    """Per-lot stop parameters (fractions)."""

    stop_loss_pct: Optional[float] = None
    trailing_type: TrailingStopType = TrailingStopType.OFF
    trailing_pct: float = 0.02
    trailing_atr_multiplier: float = 2.0
    activation_pct: float = 0.0

    @classmethod
    def from_config(cls, cfg: Any) -> "StopPolicy":
        return cls(
            stop_loss_pct=cfg.stop_loss_pct,
            trailing_type=cfg.trailing_stop_type,
            trailing_pct=float(cfg.trailing_stop_pct),
            trailing_atr_multiplier=float(cfg.trailing_stop_atr_multiplier),
            activation_pct=float(cfg.trailing_activation_pct),
        )

    @property
    def enabled(self) -> bool:
        return self.stop_loss_pct is not None or self.trailing_type != TrailingStopType.OFF


@dataclass
class FillEvent:
    """Execution-level record (one fill)."""

    symbol: str
    lot_id: int
    side: int  # 1=LONG, -1=SHORT
    fill_time: pd.Timestamp
    requested_price: float
    fill_price: float
    quantity: float
    commission: float
    fill_type: str  # ENTRY | PYRAMID | EXIT
    reason: str
    lots_after: int


class PositionLedger:
    """Authoritative list of open lots for one instrument.

    The ledger is responsible for:
      - opening lots on ENTRY/PYRAMID and closing one lot per EXIT
        (FIFO head or LIFO tail)
      - per-lot fixed and trailing stops (GAP/TOUCH fill model)
      - cash accounting and fill/trade logs

    Lots are kept in entry order, so the head is always the oldest lot and the
    tail the newest. Open lots are never held in both directions.
    """

    def __init__(
        self,
        symbol: str = "",
        *,
        max_lots: int = 1,
        unwind_mode: UnwindMode = UnwindMode.FIFO,
        executor: Optional[OrderExecutor] = None,
        initial_balance: float = 0.0,
        stops: Optional[StopPolicy] = None,
    ):
        self.symbol = str(symbol)
        self.max_lots = int(max_lots)
        self.unwind_mode = UnwindMode(unwind_mode)
        self.executor: OrderExecutor = executor or SimulatedExecutor()
        self.account = Account(cash_free=float(initial_balance))
        self.initial_balance = float(initial_balance)
        self.stops = stops or StopPolicy()

        self.lots: Deque[Lot] = deque()
        self.closed_trades: List[Trade] = []
        self.fills: List[FillEvent] = []
        self.opened_quantity: Dict[Side, float] = {Side.LONG: 0.0, Side.SHORT: 0.0}
        self._next_lot_id = 1

    # -------------------- introspection --------------------
    @property
    def direction(self) -> Side:
        return self.lots[0].direction if self.lots else Side.FLAT

    @property
    def lot_count(self) -> int:
        return len(self.lots)

    @property
    def is_flat(self) -> bool:
        return not self.lots

    def position_state(self) -> PositionState:
        if not self.lots:
            return PositionState(max_lots=self.max_lots)
        qty = sum(l.quantity for l in self.lots)
        avg = sum(l.entry_price * l.quantity for l in self.lots) / qty if qty else 0.0
        last = self.lots[-1]
        return PositionState(
            direction=self.direction,
            lot_count=len(self.lots),
            max_lots=self.max_lots,
            total_quantity=float(qty),
            average_entry_price=float(avg),
            last_entry_price=float(last.entry_price),
            last_entry_atr=last.reference_atr,
        )

    def _holding_value(self, price: float) -> float:
        if self.direction != Side.LONG:
            return 0.0
        return sum(l.quantity for l in self.lots) * float(price)

    def _short_liability(self, price: float) -> float:
        if self.direction != Side.SHORT:
            return 0.0
        return sum(l.quantity for l in self.lots) * float(price)

    def equity(self, mark_price: float) -> float:
        """Cash plus open lots marked at `mark_price`."""
        return self.account.nav(self._holding_value(mark_price), self._short_liability(mark_price))

    def size_conserved(self) -> bool:
        """Open + closed quantity per direction equals everything opened."""
        for side in (Side.LONG, Side.SHORT):
            open_qty = sum(l.quantity for l in self.lots if l.direction == side)
            closed_qty = sum(t.quantity for t in self.closed_trades if t.direction == side)
            if abs(open_qty + closed_qty - self.opened_quantity[side]) > 1e-9:
                return False
        return True

    def journal(self, max_lines: int = 200) -> str:
        """Human-readable trading journal (fills + closed trades)."""

        lines: List[str] = []
        lines.append(f"Ledger[{self.symbol}] unwind={self.unwind_mode.value} max_lots={self.max_lots}")
        lines.append(f"Closed trades: {len(self.closed_trades)}, fills: {len(self.fills)}, open lots: {len(self.lots)}")
        lines.append("-")

        # last N fills
        for f in self.fills[-max(0, int(max_lines)) :]:
            lines.append(
                f"{f.fill_time} | {f.fill_type:<7} | lot={f.lot_id} | side={f.side:+d} | px={f.fill_price:.4f} | qty={f.quantity:g} | lots={f.lots_after} | reason={f.reason}"
            )

        if len(self.closed_trades):
            lines.append("-")
            lines.append("Closed trade summaries:")
            for t in self.closed_trades[-min(30, len(self.closed_trades)) :]:
                lines.append(
                    f"{t.entry_timestamp} -> {t.exit_timestamp} | side={int(t.direction.value):+d} | entry={t.entry_price:.4f} | exit={t.exit_price:.4f} | qty={t.quantity:g} | pnl={t.pnl:,.2f} | {t.exit_reason}"
                )

        return "\n".join(lines)

    def trades_df(self) -> pd.DataFrame:
        rows: List[Dict[str, Any]] = []
        for t in self.closed_trades:
            rows.append(
                {
                    "symbol": t.symbol,
                    "lot_id": int(t.lot_id),
                    "direction": int(t.direction.value),
                    "entry_timestamp": t.entry_timestamp,
                    "entry_price": float(t.entry_price),
                    "exit_timestamp": t.exit_timestamp,
                    "exit_price": float(t.exit_price),
                    "quantity": float(t.quantity),
                    "pnl": float(t.pnl),
                    "pnl_percentage": float(t.pnl_percentage),
                    "commission": float(t.commission),
                    "entry_reason": t.entry_reason,
                    "exit_reason": t.exit_reason,
                }
            )
        return pd.DataFrame(rows)

    def fills_df(self) -> pd.DataFrame:
        return pd.DataFrame([vars(f) for f in self.fills])

    # -------------------- signal application --------------------
    def apply(self, signal: Signal) -> Optional[Trade]:
        """Apply one signal. Returns the closed Trade for an EXIT, else None.

        Raises DirectionConflict / CapacityExceeded for signals that would
        break the ledger invariants; the ledger is left unchanged then.
        """

        if signal.kind == SignalKind.EXIT:
            if not self.lots:
                return None
            if signal.direction not in (Side.FLAT, self.direction):
                raise DirectionConflict(
                    f"EXIT {signal.direction.name} while holding {self.direction.name}", signal.timestamp
                )
            lot = self.lots.popleft() if self.unwind_mode == UnwindMode.FIFO else self.lots.pop()
            return self._close_lot(lot, signal.price, signal.timestamp, signal.reason)

        if signal.direction == Side.FLAT:
            raise DirectionConflict(f"{signal.kind.value} without a direction", signal.timestamp)

        if signal.kind == SignalKind.PYRAMID and not self.lots:
            raise DirectionConflict("PYRAMID while flat", signal.timestamp)
        if self.lots and signal.direction != self.direction:
            # must flatten before reversing
            raise DirectionConflict(
                f"{signal.kind.value} {signal.direction.name} while holding {self.direction.name}", signal.timestamp
            )
        if len(self.lots) >= self.max_lots:
            raise CapacityExceeded(
                f"{signal.kind.value} rejected: {len(self.lots)}/{self.max_lots} lots open", signal.timestamp
            )

        self._open_lot(signal)
        return None

    def flatten(self, price: float, timestamp: pd.Timestamp, reason: str) -> List[Trade]:
        """Close every open lot in unwind order."""
        out: List[Trade] = []
        while self.lots:
            lot = self.lots.popleft() if self.unwind_mode == UnwindMode.FIFO else self.lots.pop()
            out.append(self._close_lot(lot, price, timestamp, reason))
        return out

    # -------------------- stops --------------------
    @staticmethod
    def _format_exit_reason(source: str, fill_type: str) -> str:
        if source == "STOP_LOSS":
            return f"STOP_LOSS_{fill_type}"
        if source == "TRAILING":
            return f"TRAILING_STOP_{fill_type}"
        return f"STOP_{fill_type}"

    def _stop_level(self, lot: Lot, atr: Optional[float]) -> Optional[Tuple[str, float]]:
        """Effective stop for one lot from state known before the candle."""

        levels: List[Tuple[str, float]] = []
        sign = int(lot.direction.value)
        X = float(lot.entry_price)

        if self.stops.stop_loss_pct is not None:
            levels.append(("STOP_LOSS", X * (1.0 - sign * float(self.stops.stop_loss_pct))))

        if lot.trailing_active and self.stops.trailing_type != TrailingStopType.OFF:
            ext = float(lot.extreme_price)
            if self.stops.trailing_type == TrailingStopType.PERCENTAGE:
                levels.append(("TRAILING", ext * (1.0 - sign * float(self.stops.trailing_pct))))
            else:
                ref = lot.reference_atr if lot.reference_atr is not None else atr
                if ref is not None and ref > 0:
                    levels.append(("TRAILING", ext - sign * float(self.stops.trailing_atr_multiplier) * float(ref)))

        if not levels:
            return None
        if lot.direction == Side.LONG:
            return max(levels, key=lambda kv: kv[1])
        return min(levels, key=lambda kv: kv[1])

    def _update_trailing(self, lot: Lot, high: float, low: float) -> None:
        if lot.direction == Side.LONG:
            lot.extreme_price = max(lot.extreme_price, float(high))
        else:
            lot.extreme_price = min(lot.extreme_price, float(low))
        if lot.trailing_active or self.stops.trailing_type == TrailingStopType.OFF:
            return
        favourable = (lot.extreme_price - lot.entry_price) / lot.entry_price * int(lot.direction.value)
        if favourable >= float(self.stops.activation_pct):
            lot.trailing_active = True

    def check_stops(self, candle: Candle, atr: Optional[float] = None) -> List[Trade]:
        """Price-level stop trigger check for every open lot (GAP/TOUCH model).

        - open already beyond the stop -> fill at the open (GAP)
        - otherwise low/high touching the stop -> fill at the stop (TOUCH)

        Stop levels use the state from before this candle. Extremes and
        trailing activation are updated afterwards for the surviving lots.
        """

        if not self.lots:
            return []

        o, h, l = float(candle.open), float(candle.high), float(candle.low)
        stopped: List[Tuple[Lot, float, str]] = []
        survivors: Deque[Lot] = deque()
        for lot in list(self.lots):
            hit = self._stop_level(lot, atr) if self.stops.enabled else None
            exit_price: Optional[float] = None
            reason = ""
            if hit is not None:
                source, eff = hit
                if lot.direction == Side.LONG:
                    if o <= eff:
                        exit_price, reason = o, self._format_exit_reason(source, "GAP")
                    elif l <= eff:
                        exit_price, reason = eff, self._format_exit_reason(source, "TOUCH")
                else:
                    if o >= eff:
                        exit_price, reason = o, self._format_exit_reason(source, "GAP")
                    elif h >= eff:
                        exit_price, reason = eff, self._format_exit_reason(source, "TOUCH")

            if exit_price is None:
                survivors.append(lot)
                continue
            stopped.append((lot, exit_price, reason))

        self.lots = survivors
        trades = [self._close_lot(lot, px, candle.timestamp, reason) for lot, px, reason in stopped]
        for lot in self.lots:
            self._update_trailing(lot, h, l)
        return trades

    # -------------------- execution primitives --------------------
    def _record_fill(self, lot: Lot, *, when: pd.Timestamp, requested: float, price: float, commission: float, fill_type: str, reason: str) -> None:
        self.fills.append(
            FillEvent(
                symbol=self.symbol,
                lot_id=int(lot.lot_id),
                side=int(lot.direction.value),
                fill_time=when,
                requested_price=float(requested),
                fill_price=float(price),
                quantity=float(lot.quantity),
                commission=float(commission),
                fill_type=str(fill_type),
                reason=str(reason),
                lots_after=len(self.lots),
            )
        )

    def _open_lot(self, signal: Signal) -> Lot:
        qty = float(signal.quantity)
        if qty <= 0:
            raise ValueError(f"Signal quantity must be > 0, got {qty}")
        fill = self.executor.fill(order_side(signal.direction, opening=True), qty, signal.price)

        lot = Lot(
            lot_id=self._next_lot_id,
            direction=signal.direction,
            entry_price=float(fill.filled_price),
            entry_timestamp=signal.timestamp,
            quantity=qty,
            entry_reason=signal.reason,
            entry_commission=float(fill.commission),
            reference_atr=signal.reference_atr,
        )
        self._next_lot_id += 1

        if lot.direction == Side.LONG:
            self.account.long_buy(lot.entry_price, qty)
        else:
            self.account.short_sell(lot.entry_price, qty)
        self.account.charge_commission(fill.commission)

        self.lots.append(lot)
        self.opened_quantity[lot.direction] += qty
        if self.stops.trailing_type != TrailingStopType.OFF and self.stops.activation_pct <= 0:
            lot.trailing_active = True

        self._record_fill(
            lot,
            when=signal.timestamp,
            requested=signal.price,
            price=lot.entry_price,
            commission=fill.commission,
            fill_type=signal.kind.value,
            reason=signal.reason,
        )
        logger.debug("%s %s lot=%d px=%.4f qty=%g (%s)", signal.kind.value, lot.direction.name, lot.lot_id, lot.entry_price, qty, signal.reason)
        return lot

    def _close_lot(self, lot: Lot, price: float, timestamp: pd.Timestamp, reason: str) -> Trade:
        fill = self.executor.fill(order_side(lot.direction, opening=False), lot.quantity, price)
        exit_price = float(fill.filled_price)

        pnl = (exit_price - lot.entry_price) * lot.quantity * int(lot.direction.value)
        basis = lot.entry_price * lot.quantity
        pnl_pct = pnl / basis if basis else 0.0

        if lot.direction == Side.LONG:
            self.account.long_sell(exit_price, lot.quantity)
        else:
            self.account.short_cover(lot.entry_price, exit_price, lot.quantity)
        self.account.charge_commission(fill.commission)

        trade = Trade(
            symbol=self.symbol,
            direction=lot.direction,
            entry_price=float(lot.entry_price),
            entry_timestamp=lot.entry_timestamp,
            exit_price=exit_price,
            exit_timestamp=timestamp,
            quantity=float(lot.quantity),
            pnl=float(pnl),
            pnl_percentage=float(pnl_pct),
            exit_reason=str(reason),
            entry_reason=lot.entry_reason,
            commission=float(lot.entry_commission + fill.commission),
            lot_id=int(lot.lot_id),
        )
        self.closed_trades.append(trade)
        self._record_fill(
            lot,
            when=timestamp,
            requested=price,
            price=exit_price,
            commission=fill.commission,
            fill_type="EXIT",
            reason=reason,
        )
        logger.debug("EXIT %s lot=%d px=%.4f pnl=%.4f (%s)", lot.direction.name, lot.lot_id, exit_price, pnl, reason)
        return trade
