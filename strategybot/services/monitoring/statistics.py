"""Realtime performance (per run) and lifetime statistics.

Both are plain dataclasses updated once per settled trade and serialised with
the camelCase keys used by the persistence API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from strategybot.infrastructure.utils.timeutils import utc_now
from strategybot.models.trade_models import TradeResult


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Performance:
    total_runs: int = 0
    number_of_wins: int = 0
    number_of_losses: int = 0
    total_stake: float = 0.0
    total_payout: float = 0.0
    total_profit: float = 0.0
    base_stake: float = 0.0
    current_stake: float = 0.0
    highest_stake: float = 0.0
    current_win_streak: int = 0
    current_loss_streak: int = 0
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    def mark_started(self, base_stake: float) -> None:
        self.started_at = utc_now()
        self.stopped_at = None
        self.base_stake = base_stake
        self.current_stake = base_stake

    def mark_stopped(self) -> None:
        self.stopped_at = utc_now()

    def set_stake(self, stake: float) -> None:
        self.current_stake = stake
        self.highest_stake = max(self.highest_stake, stake)

    def record(self, result: TradeResult) -> None:
        self.total_runs += 1
        self.total_stake += result.stake
        self.total_payout += result.payout
        self.total_profit += result.profit
        if result.is_win:
            self.number_of_wins += 1
            self.current_win_streak += 1
            self.current_loss_streak = 0
        else:
            self.number_of_losses += 1
            self.current_loss_streak += 1
            self.current_win_streak = 0

    @property
    def win_rate(self) -> float:
        """Fraction of winning runs, 0..1."""
        return self.number_of_wins / self.total_runs if self.total_runs else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRuns": self.total_runs,
            "numberOfWins": self.number_of_wins,
            "numberOfLosses": self.number_of_losses,
            "totalStake": round(self.total_stake, 2),
            "totalPayout": round(self.total_payout, 2),
            "totalProfit": round(self.total_profit, 2),
            "baseStake": self.base_stake,
            "currentStake": self.current_stake,
            "highestStake": self.highest_stake,
            "currentWinStreak": self.current_win_streak,
            "currentLossStreak": self.current_loss_streak,
            "startedAt": _iso(self.started_at),
            "stoppedAt": _iso(self.stopped_at),
        }


@dataclass
class Statistics:
    lifetime_runs: int = 0
    lifetime_wins: int = 0
    lifetime_losses: int = 0
    longest_win_streak: int = 0
    longest_loss_streak: int = 0
    shortest_win_streak: int = 0
    shortest_loss_streak: int = 0
    total_stake: float = 0.0
    total_payout: float = 0.0
    total_profit: float = 0.0
    total_win_amount: float = 0.0
    total_loss_amount: float = 0.0
    highest_stake: float = 0.0
    highest_payout: float = 0.0
    max_drawdown: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)

    # equity curve used for drawdown; balance when known, cumulative profit otherwise
    _peak_equity: Optional[float] = field(default=None, repr=False)

    def record(
        self,
        result: TradeResult,
        *,
        win_streak: int,
        loss_streak: int,
        balance: Optional[float] = None,
    ) -> None:
        self.lifetime_runs += 1
        self.total_stake += result.stake
        self.total_payout += result.payout
        self.total_profit += result.profit

        if result.is_win:
            self.lifetime_wins += 1
            self.total_win_amount += result.profit
        else:
            self.lifetime_losses += 1
            self.total_loss_amount += abs(result.profit)

        self.longest_win_streak = max(self.longest_win_streak, win_streak)
        self.longest_loss_streak = max(self.longest_loss_streak, loss_streak)
        if win_streak > 0 and (self.shortest_win_streak == 0 or win_streak < self.shortest_win_streak):
            self.shortest_win_streak = win_streak
        if loss_streak > 0 and (self.shortest_loss_streak == 0 or loss_streak < self.shortest_loss_streak):
            self.shortest_loss_streak = loss_streak

        self.highest_stake = max(self.highest_stake, result.stake)
        self.highest_payout = max(self.highest_payout, result.payout)

        self._track_drawdown(balance if balance is not None else self.total_profit)
        self.last_updated = utc_now()

    def _track_drawdown(self, equity: float) -> None:
        if self._peak_equity is None or equity > self._peak_equity:
            self._peak_equity = equity
        if self._peak_equity and self._peak_equity > 0:
            drawdown = (self._peak_equity - equity) / self._peak_equity * 100.0
            if self.max_drawdown is None or drawdown > self.max_drawdown:
                self.max_drawdown = drawdown

    @property
    def win_rate(self) -> float:
        """Percentage, 0..100."""
        return self.lifetime_wins / self.lifetime_runs * 100.0 if self.lifetime_runs else 0.0

    @property
    def profit_factor(self) -> float:
        return self.total_win_amount / self.total_loss_amount if self.total_loss_amount > 0 else 0.0

    @property
    def roi(self) -> Optional[float]:
        return self.total_profit / self.total_stake * 100.0 if self.total_stake > 0 else None

    @property
    def average_win_amount(self) -> float:
        return self.total_win_amount / self.lifetime_wins if self.lifetime_wins else 0.0

    @property
    def average_loss_amount(self) -> float:
        return self.total_loss_amount / self.lifetime_losses if self.lifetime_losses else 0.0

    def touch(self) -> None:
        self.last_updated = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lifetimeRuns": self.lifetime_runs,
            "lifetimeWins": self.lifetime_wins,
            "lifetimeLosses": self.lifetime_losses,
            "longestWinStreak": self.longest_win_streak,
            "longestLossStreak": self.longest_loss_streak,
            "shortestWinStreak": self.shortest_win_streak,
            "shortestLossStreak": self.shortest_loss_streak,
            "totalStake": round(self.total_stake, 2),
            "totalProfit": round(self.total_profit, 2),
            "totalPayout": round(self.total_payout, 2),
            "averageWinAmount": round(self.average_win_amount, 4),
            "averageLossAmount": round(self.average_loss_amount, 4),
            "winRate": round(self.win_rate, 4),
            "profitFactor": round(self.profit_factor, 4),
            "highestStake": self.highest_stake,
            "highestPayout": self.highest_payout,
            "roi": round(self.roi, 4) if self.roi is not None else None,
            "maxDrawdown": round(self.max_drawdown, 4) if self.max_drawdown is not None else None,
            "createdAt": _iso(self.created_at),
            "lastUpdated": _iso(self.last_updated),
        }
