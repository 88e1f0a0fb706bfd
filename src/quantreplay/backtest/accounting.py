from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Account:
    """Cash ledger of one backtest run.

    Longs are paid from cash. Short proceeds are held in `cash_locked` until
    covered. Commissions are charged to free cash when they occur.
    """

    cash_free: float
    cash_locked: float = 0.0
    commission_paid: float = 0.0

    def nav(self, holding_value: float, short_liability: float) -> float:
        return float(self.cash_free + self.cash_locked + holding_value - short_liability)

    def charge_commission(self, amount: float) -> None:
        self.cash_free -= float(amount)
        self.commission_paid += float(amount)

    # ---- cashflows (fees handled by charge_commission) ----
    def long_buy(self, price: float, quantity: float) -> None:
        self.cash_free -= float(price) * float(quantity)

    def long_sell(self, price: float, quantity: float) -> None:
        self.cash_free += float(price) * float(quantity)

    def short_sell(self, price: float, quantity: float) -> None:
        self.cash_locked += float(price) * float(quantity)

    def short_cover(self, entry_price: float, price: float, quantity: float) -> None:
        # release the original proceeds, pay the cover cost
        self.cash_locked -= float(entry_price) * float(quantity)
        self.cash_free += (float(entry_price) - float(price)) * float(quantity)
