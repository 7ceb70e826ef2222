"""Risk manager (NON-NEGOTIABLE limits).

Evaluated once per cycle in a fixed order, first match wins:
emergency -> max consecutive losses -> stop loss / daily loss ->
take profit / daily profit -> drawdown -> recovery attempts -> profit protection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from strategybot.models.bot_config import Amounts, RecoverySettings, RiskManagementSettings
from strategybot.services.events import ManagerEvent
from strategybot.services.risk.position_sizer import AmountResolver


class RiskAction(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    EMERGENCY = "emergency"
    COOLDOWN = "cooldown"
    DEFER = "defer"


@dataclass(frozen=True)
class RiskSnapshot:
    session_profit: float
    peak_session_profit: float
    daily_profit: float
    consecutive_losses: int
    recovery_attempts: int
    locked_profit: float
    balance: Optional[float]
    win_rate: float = 0.0          # 0..1
    total_trades: int = 0
    emergency_flag: bool = False
    emergency_reason: str = ""


@dataclass(frozen=True)
class RiskDecision:
    action: RiskAction
    reason: str = "ok"
    event: Optional[ManagerEvent] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.action == RiskAction.CONTINUE


OK = RiskDecision(RiskAction.CONTINUE)


class RiskManager:
    def __init__(
        self,
        *,
        amounts: Amounts,
        risk: RiskManagementSettings,
        recovery: RecoverySettings,
    ) -> None:
        self.amounts = amounts
        self.risk = risk
        self.recovery = recovery

    def check(self, s: RiskSnapshot) -> RiskDecision:
        if s.emergency_flag or self.risk.emergency_stop:
            reason = s.emergency_reason or "emergency_stop flag set"
            return RiskDecision(RiskAction.EMERGENCY, reason, ManagerEvent.EMERGENCY_STOP, {"reason": reason})

        max_losses = self.risk.max_consecutive_losses
        if max_losses and s.consecutive_losses >= max_losses:
            return RiskDecision(
                RiskAction.STOP,
                "max_consecutive_losses",
                ManagerEvent.STOP_LOSS_TRIGGERED,
                {"sessionProfit": s.session_profit, "reason": "max_consecutive_losses", "value": max_losses},
            )

        resolver = AmountResolver(balance=s.balance, win_rate=s.win_rate, total_trades=s.total_trades)
        stop_loss = resolver.resolve(self.amounts.stop_loss)
        daily_loss = resolver.resolve(self.risk.max_daily_loss)
        take_profit = resolver.resolve(self.amounts.take_profit)
        daily_profit = resolver.resolve(self.risk.max_daily_profit)
        if None in (stop_loss, daily_loss, take_profit, daily_profit):
            return RiskDecision(RiskAction.DEFER, "balance_unavailable")

        if stop_loss and s.session_profit <= -stop_loss:
            return RiskDecision(
                RiskAction.STOP, "stop_loss", ManagerEvent.STOP_LOSS_TRIGGERED, {"sessionProfit": s.session_profit}
            )
        if daily_loss and s.daily_profit <= -daily_loss:
            return RiskDecision(
                RiskAction.STOP,
                "max_daily_loss",
                ManagerEvent.STOP_LOSS_TRIGGERED,
                {"sessionProfit": s.session_profit, "reason": "max_daily_loss", "value": daily_loss},
            )

        if take_profit and s.session_profit >= take_profit:
            return RiskDecision(
                RiskAction.STOP, "take_profit", ManagerEvent.TAKE_PROFIT_TRIGGERED, {"sessionProfit": s.session_profit}
            )
        if daily_profit and s.daily_profit >= daily_profit:
            return RiskDecision(
                RiskAction.STOP,
                "max_daily_profit",
                ManagerEvent.TAKE_PROFIT_TRIGGERED,
                {"sessionProfit": s.session_profit, "reason": "max_daily_profit", "value": daily_profit},
            )

        max_dd = self.risk.max_drawdown_percentage
        if max_dd and s.peak_session_profit > 0:
            drawdown = (s.peak_session_profit - s.session_profit) / s.peak_session_profit * 100.0
            if drawdown >= max_dd:
                return RiskDecision(
                    RiskAction.STOP,
                    f"max_drawdown dd={drawdown:.2f}",
                    ManagerEvent.RISK_LIMIT_HIT,
                    {"type": "max_drawdown", "value": max_dd, "current": round(drawdown, 4)},
                )

        max_attempts = self.recovery.max_recovery_attempts
        if max_attempts and s.recovery_attempts > max_attempts:
            action = RiskAction.COOLDOWN if self.recovery.recovery_cooldown else RiskAction.STOP
            return RiskDecision(
                action,
                "max_recovery_attempts",
                ManagerEvent.RISK_LIMIT_HIT,
                {"type": "max_recovery_attempts", "value": max_attempts},
            )

        if s.locked_profit > 0 and s.session_profit < s.locked_profit * 0.5:
            return RiskDecision(
                RiskAction.STOP,
                "profit_protection",
                ManagerEvent.PROFIT_PROTECTION_TRIGGERED,
                {"lockedProfit": s.locked_profit, "currentProfit": s.session_profit},
            )

        return OK
