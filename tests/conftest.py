from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Union

import pytest

from strategybot.models.bot_config import BotConfiguration
from strategybot.models.errors import PersistenceError, TransientExecutionError
from strategybot.services.events import Event, EventChannel
from strategybot.services.execution.contract_gateway import Proposal, PurchasedContract, SettledContract
from strategybot.services.execution.executor import ExecutorSettings, TradingBotExecutor
from strategybot.services.manager.trading_bot_manager import LoopSettings

PAYOUT_RATIO = 1.95

# Script items: True = win, False = loss, an exception instance = raised by propose().
Step = Union[bool, BaseException]


class FakeGateway:
    """Scripted brokerage: one script item per submit attempt."""

    def __init__(self, script: Optional[List[Step]] = None, *, default_win: bool = False) -> None:
        self.script: Deque[Step] = deque(script or [])
        self.default_win = default_win
        self.bought: List[Dict[str, Any]] = []
        self.proposals = 0
        self.authorized: List[str] = []
        self.settlement_error: Optional[BaseException] = None
        self._outcomes: Dict[int, bool] = {}
        self._next_id = 1000
        self._pending = False

    async def ensure_authorized(self, credential: str) -> None:
        self.authorized.append(credential)

    async def propose(self, params) -> Proposal:
        self.proposals += 1
        step = self.script.popleft() if self.script else self.default_win
        if isinstance(step, BaseException):
            raise step
        self._pending = bool(step)
        amount = float(params["amount"])
        return Proposal(proposal_id=f"p{self.proposals}", ask_price=amount, payout=round(amount * PAYOUT_RATIO, 2))

    async def buy(self, proposal: Proposal, price: float) -> PurchasedContract:
        self._next_id += 1
        self._outcomes[self._next_id] = self._pending
        self.bought.append({"contract_id": self._next_id, "price": float(price)})
        return PurchasedContract(contract_id=self._next_id, buy_price=float(price), payout=proposal.payout)

    async def wait_for_settlement(self, contract: PurchasedContract, timeout_sec: float) -> SettledContract:
        if self.settlement_error is not None:
            raise self.settlement_error
        await asyncio.sleep(0)
        won = self._outcomes.pop(contract.contract_id)
        profit = round(contract.payout - contract.buy_price, 2) if won else -contract.buy_price
        return SettledContract(
            contract_id=contract.contract_id,
            buy_price=contract.buy_price,
            sell_price=contract.payout if won else 0.0,
            payout=contract.payout,
            profit=profit,
            is_win=won,
        )

    @property
    def stakes(self) -> List[float]:
        return [b["price"] for b in self.bought]


class SlowFailingGateway(FakeGateway):
    """First proposal stays in flight for ``delay`` seconds, then fails transiently."""

    def __init__(self, delay: float = 0.05, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.delay = delay

    async def propose(self, params) -> Proposal:
        if self.proposals == 0:
            self.proposals += 1
            await asyncio.sleep(self.delay)
            raise TransientExecutionError("proposal timed out upstream")
        return await super().propose(params)


class FakeBotApi:
    """Records persistence calls; ``fail=True`` makes every call raise."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[tuple] = []

    async def _call(self, name: str, *args: Any) -> Dict[str, Any]:
        self.calls.append((name,) + args)
        if self.fail:
            raise PersistenceError(f"{name} failed", status_code=503)
        return {"ok": True}

    async def create_bot(self, payload):
        return await self._call("create_bot", payload)

    async def get_bot(self, bot_id):
        return await self._call("get_bot", bot_id)

    async def update_bot(self, bot_id, updates):
        return await self._call("update_bot", bot_id, updates)

    async def delete_bot(self, bot_id):
        return await self._call("delete_bot", bot_id)

    async def update_status(self, bot_id, status):
        return await self._call("update_status", bot_id, status)

    async def update_realtime_performance(self, bot_id, performance):
        return await self._call("update_realtime_performance", bot_id, performance)

    async def update_statistics(self, bot_id, statistics):
        return await self._call("update_statistics", bot_id, statistics)

    async def create_trade_record(self, record):
        return await self._call("create_trade_record", record)

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


class Recorder:
    """Collects every event of a channel in order."""

    def __init__(self, channel: EventChannel) -> None:
        self.events: List[Event] = []
        self.subscription = channel.subscribe_all(self.events.append)

    def names(self) -> List[str]:
        return [e.name.value for e in self.events]

    def of(self, name: str) -> List[Event]:
        return [e for e in self.events if e.name.value == name]

    def count(self, name: str) -> int:
        return len(self.of(name))


def make_config(**overrides: Any) -> BotConfiguration:
    data: Dict[str, Any] = {
        "botId": "bot-1",
        "botName": "Test bot",
        "accountToken": "a1-test-token-123",
        "contract": {"market": "R_100", "contractType": "CALL", "duration": 1, "durationUnit": "t", "delay": 0},
        "amounts": {
            "base_stake": {"type": "fixed", "value": 1},
            "maximum_stake": {"type": "fixed", "value": 1000},
            "take_profit": {"type": "fixed", "value": 1000},
            "stop_loss": {"type": "fixed", "value": 1000},
        },
        "strategy": {"kind": "martingale", "martingale_multiplier": 2},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return BotConfiguration.model_validate(data)


FAST_EXECUTOR = ExecutorSettings(max_retry_attempts=3, retry_delay_base=0.001, max_retry_delay=0.01)
FAST_LOOP = LoopSettings(
    schedule_poll_sec=0.01,
    defer_delay_sec=0.01,
    error_retry_delay_sec=0.0,
    max_consecutive_failures=5,
    persist_every_n_trades=1,
    provider_timeout_sec=1.0,
)


def make_executor(gateway: FakeGateway, api: Optional[FakeBotApi] = None) -> TradingBotExecutor:
    return TradingBotExecutor(gateway, api_client=api, settings=FAST_EXECUTOR)  # type: ignore[arg-type]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()

