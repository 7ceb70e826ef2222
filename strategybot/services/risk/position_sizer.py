"""Amount resolution and stake bounds.

Notes:
- Amounts are declared as fixed, percentage (of current balance) or dynamic
  (value scaled by 0.5 + win rate once enough trades exist).
- The final stake always lands inside [min_stake, max_stake].
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from strategybot.models.bot_config import AmountSpec, AmountType

DYNAMIC_MIN_TRADES = 5


def _floor_cents(value: float) -> float:
    return math.floor(round(value * 100, 6)) / 100


def _ceil_cents(value: float) -> float:
    return math.ceil(round(value * 100, 6)) / 100


class AmountResolver:
    def __init__(self, *, balance: Optional[float], win_rate: float = 0.0, total_trades: int = 0) -> None:
        self.balance = balance
        self.win_rate = float(win_rate)      # 0..1
        self.total_trades = int(total_trades)

    def resolve(self, spec: Optional[AmountSpec]) -> Optional[float]:
        """Return the amount, 0.0 when unset, None when it needs a balance we do not have."""

        if spec is None:
            return 0.0
        if spec.type == AmountType.PERCENTAGE:
            if self.balance is None:
                return None
            percentage = spec.balance_percentage if spec.balance_percentage is not None else spec.value
            return float(self.balance) * percentage / 100.0
        if spec.type == AmountType.DYNAMIC:
            if self.total_trades > DYNAMIC_MIN_TRADES:
                return spec.value * (0.5 + self.win_rate)
            return spec.value
        return spec.value


@dataclass(frozen=True)
class SizeDecision:
    stake: float
    raw_stake: float
    capped_by: str = ""


class PositionSizer:
    """Clamp a strategy stake into the tradable range.

    Caps are applied in order (maximum stake, risk-per-trade, locked-profit
    protection) and the result is then forced into [min_stake, max_stake].
    """

    def __init__(self, *, min_stake: float, max_stake: float) -> None:
        self.min_stake = float(min_stake)
        self.max_stake = float(max_stake)

    def bounds(self, configured_max: Optional[float]) -> tuple[float, float]:
        upper = self.max_stake
        if configured_max is not None and configured_max > 0:
            upper = min(upper, configured_max)
        return self.min_stake, max(self.min_stake, upper)

    def size(
        self,
        stake: float,
        *,
        configured_max: Optional[float] = None,
        balance: Optional[float] = None,
        risk_per_trade_percent: Optional[float] = None,
        locked_profit: float = 0.0,
    ) -> SizeDecision:
        raw = float(stake)
        lo, hi = self.bounds(configured_max)
        capped_by = ""
        value = raw

        if value > hi:
            value, capped_by = hi, "max_stake"

        if risk_per_trade_percent and balance and balance > 0:
            risk_cap = balance * risk_per_trade_percent / 100.0
            if value > risk_cap:
                value, capped_by = risk_cap, "risk_per_trade"

        if locked_profit > 0 and balance:
            unlocked = balance - locked_profit
            if unlocked > 0 and value > unlocked * 0.5:
                value, capped_by = unlocked * 0.5, "locked_profit"

        # upper caps round down to whole cents so rounding never crosses them
        stake = _floor_cents(value) if capped_by else round(value, 2)
        lo_cents = _ceil_cents(lo)
        hi_cents = max(lo_cents, _floor_cents(hi))
        if stake < lo_cents:
            stake, capped_by = lo_cents, capped_by or "min_stake"

        return SizeDecision(stake=min(stake, hi_cents), raw_stake=raw, capped_by=capped_by)
