"""Error taxonomy for the bot engine.

Only ConfigInvalid and the emergency path may halt a bot without a later
automatic retry; everything else is absorbed by the trade loop and reported.
"""

from __future__ import annotations

from typing import List, Optional


class StrategyBotError(RuntimeError):
    pass


class ConfigInvalid(StrategyBotError):
    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")


class ScheduleBlocked(StrategyBotError):
    pass


class TransientExecutionError(StrategyBotError):
    """Network/timeout failure during proposal or buy. Retried."""


class ContractRejected(StrategyBotError):
    """The brokerage (or local validation) refused the contract parameters."""

    def __init__(self, message: str, *, errors: Optional[List[str]] = None, code: Optional[str] = None) -> None:
        self.errors = list(errors or [])
        self.code = code
        super().__init__(message)


class TradeExecutionFailed(StrategyBotError):
    def __init__(self, message: str, *, attempts: int, last_error: Optional[BaseException] = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class SettlementUnresolved(StrategyBotError):
    def __init__(self, message: str, *, contract_id: Optional[int] = None) -> None:
        self.contract_id = contract_id
        super().__init__(message)


class TradeCancelled(StrategyBotError):
    pass


class PersistenceError(StrategyBotError):
    def __init__(self, message: str, *, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message)
