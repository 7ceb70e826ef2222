from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from typing_extensions import NotRequired, TypedDict


class ContractParams(TypedDict):
    """Flat proposal parameters in the shape the brokerage expects."""

    amount: float
    basis: str              # "stake" | "payout"
    contract_type: str
    currency: str
    symbol: str
    duration: int
    duration_unit: str      # "t" | "s" | "m" | "h" | "d"
    barrier: NotRequired[str]
    multiplier: NotRequired[float]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str]


@dataclass(frozen=True)
class TradeResult:
    trade_id: str
    session_id: Optional[str]
    contract_id: int
    symbol: str
    contract_type: str
    stake: float
    payout: float
    profit: float
    is_win: bool
    entry_spot: Optional[float] = None
    exit_spot: Optional[float] = None
    purchased_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    currency: str = "USD"
    status: str = "settled"   # "won" | "lost" | "settled"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("purchased_at", "settled_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class TradeOutcome:
    """The slice of a settled trade that staking strategies react to."""

    is_win: bool
    profit: float
    stake: float

    @classmethod
    def from_result(cls, result: TradeResult) -> "TradeOutcome":
        return cls(is_win=result.is_win, profit=result.profit, stake=result.stake)
