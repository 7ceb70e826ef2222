"""Per-bot mutable runtime state.

A RuntimeState belongs to exactly one TradingBotManager. Strategy counters are
kept in an immutable record so the staking functions can stay pure and hand
back a replacement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class StrategyCounters:
    martingale_step: int = 0
    dalembert_stake: Optional[float] = None
    reverse_wins: int = 0
    system_1326_position: int = 0
    system_1326_cycles: int = 0
    oscars_units: int = 1
    oscars_cycle_profit: float = 0.0


@dataclass
class RuntimeState:
    base_stake: float = 0.0
    current_stake: float = 0.0

    # session streaks (reset by wins/losses and by strategy resets)
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    # lifetime streaks (survive strategy resets and auto restarts)
    lifetime_consecutive_wins: int = 0
    lifetime_consecutive_losses: int = 0

    recovery_step_index: Optional[int] = None
    recovery_attempts: int = 0

    session_profit: float = 0.0
    peak_session_profit: float = 0.0
    locked_profit: float = 0.0
    daily_profit: float = 0.0
    daily_date: Optional[date] = None

    trade_count: int = 0
    running_time_sec: float = 0.0
    start_balance: Optional[float] = None

    alternate_counter: int = 0
    current_contract_type: str = ""
    consecutive_failures: int = 0

    counters: StrategyCounters = field(default_factory=StrategyCounters)

    @property
    def in_recovery(self) -> bool:
        return self.recovery_step_index is not None

    def roll_day(self, today: date) -> None:
        if self.daily_date != today:
            self.daily_date = today
            self.daily_profit = 0.0

    def record_profit(self, profit: float, today: date) -> None:
        self.roll_day(today)
        self.session_profit += profit
        self.daily_profit += profit
        self.peak_session_profit = max(self.peak_session_profit, self.session_profit)

    def record_win(self) -> None:
        self.consecutive_wins += 1
        self.consecutive_losses = 0
        self.lifetime_consecutive_wins += 1
        self.lifetime_consecutive_losses = 0

    def record_loss(self) -> None:
        self.consecutive_losses += 1
        self.consecutive_wins = 0
        self.lifetime_consecutive_losses += 1
        self.lifetime_consecutive_wins = 0

    def lock_profit(self, amount: float) -> float:
        """Move up to ``amount`` into locked profit, never beyond session profit."""
        room = self.session_profit - self.locked_profit
        locked = round(max(0.0, min(amount, room)), 2)
        self.locked_profit = round(self.locked_profit + locked, 2)
        return locked

    def reset_strategy(self) -> None:
        self.counters = StrategyCounters()
        self.consecutive_wins = 0
        self.consecutive_losses = 0
        self.recovery_step_index = None
        self.recovery_attempts = 0
        self.current_stake = self.base_stake
