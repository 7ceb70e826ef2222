"""Trade executor.

Responsibilities:
- build / validate brokerage contract parameters
- submit proposal + buy with bounded retries and exponential backoff
- await settlement exactly once and normalise it into a TradeResult
- session bookkeeping and persistence of bot records / trade records

Executor has no opinion about stakes or risk; it runs what it is given.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from strategybot.infrastructure.api.bot_api_client import BotApiClient
from strategybot.infrastructure.logging.logging import get_logger
from strategybot.infrastructure.utils.timeutils import epoch_ms, utc_now
from strategybot.models.bot_config import DIGIT_CONTRACT_TYPES, DURATION_UNITS, BotConfiguration, ContractSpec
from strategybot.models.errors import (
    ContractRejected,
    PersistenceError,
    SettlementUnresolved,
    StrategyBotError,
    TradeCancelled,
    TradeExecutionFailed,
    TransientExecutionError,
)
from strategybot.models.trade_models import ContractParams, TradeResult, ValidationResult
from strategybot.services.events import EventChannel, ExecutorEvent
from strategybot.services.execution.contract_gateway import ContractGateway, PurchasedContract

REQUIRED_FIELDS = ("amount", "basis", "contract_type", "currency", "symbol", "duration", "duration_unit")


@dataclass(frozen=True)
class ExecutorSettings:
    max_retry_attempts: int = 3
    retry_delay_base: float = 1.0       # seconds
    max_retry_delay: float = 30.0
    min_stake: float = 0.35
    max_stake: float = 50000.0
    settlement_timeout_sec: float = 300.0


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


class TradingBotExecutor:
    def __init__(
        self,
        gateway: ContractGateway,
        *,
        api_client: Optional[BotApiClient] = None,
        settings: Optional[ExecutorSettings] = None,
    ) -> None:
        self.gateway = gateway
        self.api = api_client
        self.settings = settings or ExecutorSettings()
        self.events: EventChannel[ExecutorEvent] = EventChannel(ExecutorEvent, owner="executor")
        self._logger = get_logger("executor")

        self.current_bot: Optional[BotConfiguration] = None
        self.session_id: Optional[str] = None
        self.trade_history: List[TradeResult] = []
        self.unresolved: List[Dict[str, Any]] = []

        self._cancel_evt: Optional[asyncio.Event] = None
        self._persist_tasks: Set[asyncio.Task] = set()

    # --------- contract params ---------

    def build_contract_params(
        self,
        contract: ContractSpec,
        stake: float,
        currency: str,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> ContractParams:
        contract_types = contract.contract_types
        params: ContractParams = {
            "amount": round(float(stake), 2),
            "basis": contract.basis,
            "contract_type": contract_types[0] if contract_types else "",
            "currency": currency or "USD",
            "symbol": contract.market,
            "duration": int(contract.duration),
            "duration_unit": contract.duration_unit,
        }
        if contract.prediction is not None:
            params["barrier"] = str(contract.prediction)
        if contract.multiplier:
            params["multiplier"] = contract.multiplier
        if overrides:
            params.update(overrides)  # type: ignore[typeddict-item]
        return params

    def validate_contract_params(self, params: Dict[str, Any]) -> ValidationResult:
        errors: List[str] = []
        for name in REQUIRED_FIELDS:
            if params.get(name) in (None, ""):
                errors.append(f"{name}: required")

        amount = params.get("amount")
        if amount is not None:
            if not _is_number(amount):
                errors.append("amount: must be a number")
            else:
                value = float(amount)
                if value < self.settings.min_stake:
                    errors.append(f"amount: must be >= {self.settings.min_stake}")
                elif value > self.settings.max_stake:
                    errors.append(f"amount: must be <= {self.settings.max_stake}")

        duration = params.get("duration")
        if duration not in (None, ""):
            if not _is_number(duration) or float(duration) <= 0:
                errors.append("duration: must be greater than 0")

        unit = params.get("duration_unit")
        if unit not in (None, "") and unit not in DURATION_UNITS:
            errors.append(f"duration_unit: must be one of {list(DURATION_UNITS)}")

        barrier = params.get("barrier")
        if str(params.get("contract_type") or "").upper() in DIGIT_CONTRACT_TYPES and barrier in (None, ""):
            errors.append("barrier: required for digit contracts")
        elif barrier not in (None, "") and not _is_number(barrier):
            errors.append("barrier: must be numeric")

        return ValidationResult(valid=not errors, errors=errors)

    # --------- execution ---------

    def _retry_delay(self, attempt: int) -> float:
        return min(self.settings.retry_delay_base * (2 ** attempt), self.settings.max_retry_delay)

    async def _backoff(self, delay: float, cancel_evt: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(cancel_evt.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise TradeCancelled("pending trade cancelled during retry backoff")

    def cancel_pending(self) -> bool:
        """Abandon any retry still to come for the trade in progress.

        A proposal or buy already sent runs to completion; only the following
        attempts (and the backoff before them) are dropped.
        """
        if self._cancel_evt is None:
            return False
        self._cancel_evt.set()
        return True

    async def execute_trade(self, params: ContractParams, credential: str) -> TradeResult:
        validation = self.validate_contract_params(dict(params))
        if not validation.valid:
            self._logger.warning("trade_validation_failed", errors=validation.errors)
            raise ContractRejected(
                f"Invalid contract params: {'; '.join(validation.errors)}", errors=validation.errors
            )

        cancel_evt = self._cancel_evt = asyncio.Event()
        try:
            purchased = await self._purchase(params, credential, cancel_evt)
        finally:
            self._cancel_evt = None

        try:
            settled = await self.gateway.wait_for_settlement(purchased, self.settings.settlement_timeout_sec)
        except (asyncio.TimeoutError, StrategyBotError) as e:
            record = {
                "contractId": purchased.contract_id,
                "sessionId": self.session_id,
                "stake": purchased.buy_price,
                "error": str(e) or type(e).__name__,
                "at": utc_now().isoformat(),
            }
            self.unresolved.append(record)
            self.events.emit(ExecutorEvent.TRADE_UNRESOLVED, record)
            self._logger.error("trade_unresolved", contract_id=purchased.contract_id, error=record["error"])
            raise SettlementUnresolved(
                f"settlement of contract {purchased.contract_id} not observed", contract_id=purchased.contract_id
            ) from e

        result = TradeResult(
            trade_id=f"trade_{epoch_ms()}_{uuid.uuid4().hex[:8]}",
            session_id=self.session_id,
            contract_id=settled.contract_id,
            symbol=params["symbol"],
            contract_type=params["contract_type"],
            stake=round(settled.buy_price, 2),
            payout=round(settled.payout, 2),
            profit=round(settled.profit, 2),
            is_win=settled.is_win,
            entry_spot=settled.entry_spot,
            exit_spot=settled.exit_spot,
            purchased_at=purchased.purchase_time,
            settled_at=settled.sell_time or utc_now(),
            currency=params["currency"],
            status="won" if settled.is_win else "lost",
        )
        self.trade_history.append(result)
        self.events.emit(ExecutorEvent.TRADE_EXECUTED, {"result": result.to_dict()})
        self._logger.info(
            "trade_settled", trade_id=result.trade_id, contract_id=result.contract_id, profit=result.profit
        )
        self._persist_trade_async(result)
        return result

    async def _purchase(
        self, params: ContractParams, credential: str, cancel_evt: asyncio.Event
    ) -> PurchasedContract:
        max_attempts = max(1, self.settings.max_retry_attempts)
        last_error: Optional[BaseException] = None

        for attempt in range(max_attempts):
            if cancel_evt.is_set():
                raise TradeCancelled("pending trade cancelled before retry")
            self.events.emit(
                ExecutorEvent.TRADE_ATTEMPT,
                {"attempt": attempt + 1, "maxAttempts": max_attempts, "params": dict(params)},
            )
            try:
                await self.gateway.ensure_authorized(credential)
                proposal = await self.gateway.propose(params)
                return await self.gateway.buy(proposal, params["amount"])
            except ContractRejected as e:
                self._logger.warning("contract_rejected", error=str(e), code=e.code)
                raise
            except (TransientExecutionError, asyncio.TimeoutError) as e:
                last_error = e
                self._logger.warning("trade_attempt_failed", attempt=attempt + 1, error=str(e))
                if attempt < max_attempts - 1:
                    await self._backoff(self._retry_delay(attempt), cancel_evt)

        message = f"All {max_attempts} trade attempts failed: {last_error or 'unknown error'}"
        self.events.emit(ExecutorEvent.TRADE_ALL_ATTEMPTS_FAILED, {"error": message, "params": dict(params)})
        raise TradeExecutionFailed(message, attempts=max_attempts, last_error=last_error)

    # --------- sessions ---------

    def start_session(self) -> str:
        self.session_id = f"session_{epoch_ms()}_{uuid.uuid4().hex[:8]}"
        self.trade_history = []
        self.events.emit(ExecutorEvent.SESSION_STARTED, {"sessionId": self.session_id})
        return self.session_id

    def end_session(self) -> None:
        session_id, self.session_id = self.session_id, None
        self.events.emit(ExecutorEvent.SESSION_ENDED, {"sessionId": session_id, "trades": len(self.trade_history)})

    # --------- persistence ---------

    def _trade_record(self, result: TradeResult) -> Dict[str, Any]:
        bot = self.current_bot
        return {
            "tradeId": result.trade_id,
            "sessionId": result.session_id,
            "botId": bot.bot_id if bot else "",
            "botUUID": bot.bot_uuid if bot else "",
            "contractId": result.contract_id,
            "symbol": result.symbol,
            "contractType": result.contract_type,
            "buyPrice": result.stake,
            "payout": result.payout,
            "profit": result.profit,
            "isWin": result.is_win,
            "status": result.status,
            "currency": result.currency,
            "entrySpotValue": result.entry_spot,
            "exitSpotValue": result.exit_spot,
            "purchaseTime": result.purchased_at.isoformat() if result.purchased_at else None,
            "exitTime": result.settled_at.isoformat() if result.settled_at else None,
        }

    def _persist_trade_async(self, result: TradeResult) -> None:
        if self.api is None:
            return
        task = asyncio.create_task(self._persist_trade(result))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _persist_trade(self, result: TradeResult) -> None:
        assert self.api is not None
        try:
            await self.api.create_trade_record(self._trade_record(result))
        except PersistenceError as e:
            self._logger.warning("trade_persist_error", trade_id=result.trade_id, error=str(e))
            self.events.emit(ExecutorEvent.TRADE_PERSIST_ERROR, {"error": str(e), "tradeId": result.trade_id})

    async def drain(self) -> None:
        """Wait for outstanding trade-record writes."""
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    def _require_api(self) -> BotApiClient:
        if self.api is None:
            raise PersistenceError("persistence API is not configured")
        return self.api

    async def create_bot(self, config: BotConfiguration) -> Dict[str, Any]:
        data = await self._require_api().create_bot(config.to_api_payload())
        self.current_bot = config
        return data

    async def load_bot(self, bot_id: str) -> BotConfiguration:
        data = await self._require_api().get_bot(bot_id)
        self.current_bot = BotConfiguration.model_validate(data)
        return self.current_bot

    async def update_bot(self, bot_id: str, updates: Dict[str, Any]) -> Any:
        if self.api is None:
            return None
        return await self.api.update_bot(bot_id, updates)

    async def delete_bot(self, bot_id: str) -> Any:
        data = await self._require_api().delete_bot(bot_id)
        if self.current_bot is not None and self.current_bot.identity == bot_id:
            self.current_bot = None
        return data

    async def update_status(self, bot_id: str, status: str) -> Any:
        if self.api is None:
            return None
        return await self.api.update_status(bot_id, status)

    async def update_realtime_performance(self, bot_id: str, performance: Dict[str, Any]) -> Any:
        if self.api is None:
            return None
        return await self.api.update_realtime_performance(bot_id, performance)

    async def update_statistics(self, bot_id: str, statistics: Dict[str, Any]) -> Any:
        if self.api is None:
            return None
        return await self.api.update_statistics(bot_id, statistics)
