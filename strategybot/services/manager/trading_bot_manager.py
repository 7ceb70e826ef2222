"""Trade-loop manager: one bot, one RuntimeState, one asyncio task.

Lifecycle:
    IDLE/STOPPED/ERROR --start--> RUNNING <--pause/resume--> PAUSED
    any --stop--> STOPPED            RUNNING --emergency--> ERROR

Cycle (only while RUNNING):
    completion -> schedule -> volatility -> risk -> stake -> execute
    -> settle -> post-trade risk -> cooldown -> delay

pause()/stop() are cooperative: they never interrupt a trade in flight, the
loop observes them at the next cycle boundary. Sleeps (delay, cooldown,
schedule polling) wake early on stop().
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel

from strategybot.infrastructure.logging.logging import bind_session, clear_session, get_logger
from strategybot.infrastructure.utils.timeutils import local_now
from strategybot.models.bot_config import (
    AdvancedSettings,
    Amounts,
    BotConfiguration,
    ContractSpec,
    CooldownSpec,
    RecoveryStep,
    Schedule,
    StrategyParams,
)
from strategybot.models.errors import (
    ConfigInvalid,
    ContractRejected,
    PersistenceError,
    ScheduleBlocked,
    SettlementUnresolved,
    TradeCancelled,
    TradeExecutionFailed,
)
from strategybot.models.runtime_state import RuntimeState
from strategybot.models.trade_models import TradeOutcome, TradeResult
from strategybot.services.events import EventChannel, ManagerEvent
from strategybot.services.execution.executor import TradingBotExecutor
from strategybot.services.monitoring.statistics import Performance, Statistics
from strategybot.services.risk.killswitch import KillSwitch
from strategybot.services.risk.position_sizer import AmountResolver, PositionSizer
from strategybot.services.risk.recovery_ladder import RecoveryLadder
from strategybot.services.risk.risk_manager import RiskAction, RiskDecision, RiskManager, RiskSnapshot
from strategybot.services.schedule.cooldown import cooldown_seconds
from strategybot.services.schedule.schedule_gate import ScheduleGate
from strategybot.services.strategy.stake_strategies import StakeContext, next_stake

Provider = Callable[[], Union[float, None, Awaitable[Optional[float]]]]


class BotStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


# status endpoint name on the persistence API for each transition target
_STATUS_ACTIONS = {
    BotStatus.RUNNING: "start",
    BotStatus.PAUSED: "pause",
    BotStatus.STOPPED: "stop",
    BotStatus.ERROR: "error",
}


@dataclass(frozen=True)
class LoopSettings:
    schedule_poll_sec: float = 30.0
    defer_delay_sec: float = 5.0
    error_retry_delay_sec: float = 5.0
    max_consecutive_failures: int = 5
    persist_every_n_trades: int = 5
    provider_timeout_sec: float = 5.0


class TradingBotManager:
    def __init__(
        self,
        config: BotConfiguration,
        executor: TradingBotExecutor,
        *,
        balance_provider: Optional[Provider] = None,
        volatility_provider: Optional[Provider] = None,
        killswitch: Optional[KillSwitch] = None,
        clock: Callable[[], datetime] = local_now,
        settings: Optional[LoopSettings] = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.settings = settings or LoopSettings()
        self.events: EventChannel[ManagerEvent] = EventChannel(ManagerEvent, owner=config.identity)

        self._balance_provider = balance_provider
        self._volatility_provider = volatility_provider
        self._killswitch = killswitch or KillSwitch()
        self._clock = clock
        self._logger = get_logger("manager", bot_id=config.identity)

        self._status = BotStatus.IDLE
        self.state = RuntimeState()
        self.performance = Performance()
        self.statistics = Statistics()

        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._resumed = asyncio.Event()
        self._halt_status = BotStatus.STOPPED
        self._override_schedule = False
        self._schedule_blocked = False
        self._volatility_paused = False
        self._next_stake: Optional[float] = None
        self._trades_since_persist = 0
        self._running_since: Optional[float] = None

        self._rebuild()

    # --------- read-only views ---------

    @property
    def status(self) -> BotStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status in (BotStatus.RUNNING, BotStatus.PAUSED)

    @property
    def trade_history(self) -> List[TradeResult]:
        return list(self.executor.trade_history)

    def snapshot(self) -> Dict[str, Any]:
        s = self.state
        return {
            "botId": self.config.identity,
            "botName": self.config.bot_name,
            "status": self._status.value,
            "strategy": self.config.strategy.kind,
            "sessionId": self.executor.session_id,
            "baseStake": s.base_stake,
            "currentStake": s.current_stake,
            "sessionProfit": round(s.session_profit, 2),
            "dailyProfit": round(s.daily_profit, 2),
            "lockedProfit": s.locked_profit,
            "consecutiveWins": s.consecutive_wins,
            "consecutiveLosses": s.consecutive_losses,
            "recoveryStepIndex": s.recovery_step_index,
            "recoveryAttempts": s.recovery_attempts,
            "tradeCount": s.trade_count,
            "runningTimeSec": round(self._running_time(), 1),
            "contractType": s.current_contract_type,
        }

    # --------- collaborators derived from config ---------

    def _rebuild(self) -> None:
        adv = self.config.advanced_settings
        self._risk = RiskManager(
            amounts=self.config.amounts, risk=adv.risk_management, recovery=adv.recovery_settings
        )
        self._ladder = RecoveryLadder(
            self.config.recovery_steps,
            enabled=adv.recovery_settings.enabled,
            progressive=adv.recovery_settings.progressive_recovery,
            recovery_multiplier=adv.recovery_settings.recovery_multiplier,
        )
        self._gate = ScheduleGate(self.config.schedule)

    # --------- events / logging ---------

    def _emit(self, name: ManagerEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        self.events.emit(name, payload)

    def _log(self, event: str, message: str, **fields: Any) -> None:
        self._logger.info(event, message=message, **fields)
        self._emit(ManagerEvent.LOG, {"message": message, "timestamp": self._clock().isoformat()})

    async def _set_status(self, new: BotStatus) -> None:
        old = self._status
        if old == new:
            return
        self._status = new
        self._emit(ManagerEvent.STATUS_CHANGED, {"from": old.value, "to": new.value})
        self._logger.info("status_changed", from_status=old.value, to_status=new.value)

        action = _STATUS_ACTIONS.get(new)
        if new == BotStatus.RUNNING and old == BotStatus.PAUSED:
            action = "resume"
        if action and self.config.identity:
            await self._persist(self.executor.update_status(self.config.identity, action))

    async def _persist(self, call: Awaitable[Any]) -> None:
        try:
            await call
        except PersistenceError as e:
            self._logger.warning("persist_error", error=str(e), status_code=e.status_code)
            self._emit(ManagerEvent.PERSIST_ERROR, {"error": str(e)})

    async def _persist_progress(self) -> None:
        bot_id = self.config.identity
        if not bot_id:
            return
        self._trades_since_persist = 0
        await self._persist(self.executor.update_realtime_performance(bot_id, self.performance.to_dict()))
        await self._persist(self.executor.update_statistics(bot_id, self.statistics.to_dict()))

    # --------- lifecycle ---------

    async def start(self, *, override_schedule: bool = False, wait_for_schedule: bool = True) -> None:
        if self.is_active:
            self._logger.info("start_ignored", status=self._status.value)
            return

        errors = self.config.validation_errors()
        if errors:
            self._emit(ManagerEvent.ERROR, {"message": "Invalid configuration: " + "; ".join(errors)})
            raise ConfigInvalid(errors)

        if not override_schedule and not wait_for_schedule:
            decision = self._gate.check(self._clock())
            if not decision.allowed:
                raise ScheduleBlocked(f"outside trading schedule: {decision.reason}")

        self._override_schedule = override_schedule
        self._new_session()
        self.performance.mark_started(self.state.base_stake)
        self._stopping = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._halt_status = BotStatus.STOPPED
        self._running_since = asyncio.get_running_loop().time()

        await self._set_status(BotStatus.RUNNING)
        self._log("bot_started", f"Bot started with strategy {self.config.strategy.kind}")
        self._task = asyncio.create_task(self._run_loop(), name=f"bot-loop-{self.config.identity}")

    def _new_session(self) -> None:
        previous = self.state
        self.state = RuntimeState(
            lifetime_consecutive_wins=previous.lifetime_consecutive_wins,
            lifetime_consecutive_losses=previous.lifetime_consecutive_losses,
        )
        self.state.current_contract_type = (self.config.contract.contract_types or [""])[0]
        self._next_stake = None
        self._schedule_blocked = False
        self._volatility_paused = False
        self._trades_since_persist = 0
        self.executor.current_bot = self.config
        self.executor.start_session()

    async def pause(self) -> None:
        if self._status != BotStatus.RUNNING:
            return
        self._accumulate_running_time()
        self._resumed.clear()
        await self._set_status(BotStatus.PAUSED)
        self._log("bot_paused", "Bot paused; takes effect after the current trade settles")

    async def resume(self) -> None:
        if self._status != BotStatus.PAUSED:
            return
        self._running_since = asyncio.get_running_loop().time()
        await self._set_status(BotStatus.RUNNING)
        self._resumed.set()
        self._log("bot_resumed", "Bot resumed")

    async def stop(self) -> None:
        if self._status == BotStatus.STOPPED:
            return
        if self._task is None:
            await self._set_status(BotStatus.STOPPED)
            return
        self._request_halt(BotStatus.STOPPED)
        await self._join()

    async def emergency_stop(self, reason: str) -> None:
        if self._status == BotStatus.ERROR:
            return
        self._escalate(reason)
        if self._task is None:
            await self._set_status(BotStatus.ERROR)
            return
        await self._join()

    async def wait_closed(self) -> None:
        await self._join()

    def _escalate(self, reason: str) -> None:
        self._emit(ManagerEvent.EMERGENCY_STOP, {"reason": reason, "timestamp": self._clock().isoformat()})
        self._logger.error("emergency_stop", reason=reason)
        self._request_halt(BotStatus.ERROR)

    def _request_halt(self, status: BotStatus) -> None:
        # ERROR wins over a concurrent plain stop
        if not self._stopping.is_set() or status == BotStatus.ERROR:
            self._halt_status = status
        self._stopping.set()
        self._resumed.set()
        self.executor.cancel_pending()

    async def _join(self) -> None:
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await asyncio.shield(task)

    # --------- typed configuration updates ---------

    async def update_contract(self, contract: ContractSpec) -> None:
        await self._apply_update(contract=contract)
        if self.state.current_contract_type not in contract.contract_types:
            self.state.current_contract_type = (contract.contract_types or [""])[0]
            self.state.alternate_counter = 0

    async def update_amounts(self, amounts: Amounts) -> None:
        await self._apply_update(amounts=amounts)

    async def update_recovery_steps(self, steps: Sequence[RecoveryStep]) -> None:
        await self._apply_update(recovery_steps=list(steps))
        self.state.recovery_step_index = None
        self.state.recovery_attempts = 0

    async def update_advanced_settings(self, settings: AdvancedSettings) -> None:
        await self._apply_update(advanced_settings=settings)

    async def update_schedule(self, schedule: Optional[Schedule]) -> None:
        await self._apply_update(schedule=schedule)

    async def update_strategy(self, strategy: StrategyParams) -> None:
        await self._apply_update(strategy=strategy)
        self.reset_strategy()

    async def _apply_update(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        self.executor.current_bot = self.config
        self._rebuild()
        self._logger.info("config_updated", fields=sorted(changes))

        if not self.config.identity:
            return
        payload: Dict[str, Any] = {}
        for name, value in changes.items():
            key = BotConfiguration.model_fields[name].alias or name
            if isinstance(value, BaseModel):
                payload[key] = value.model_dump(mode="json", by_alias=True)
            elif isinstance(value, list):
                payload[key] = [v.model_dump(mode="json", by_alias=True) for v in value]
            else:
                payload[key] = value
        await self._persist(self.executor.update_bot(self.config.identity, payload))

    def reset_strategy(self) -> None:
        self.state.reset_strategy()
        self._next_stake = None
        self._emit(ManagerEvent.STRATEGY_RESET, {"message": "Strategy state reset to base stake"})

    # --------- timing helpers ---------

    def _accumulate_running_time(self) -> None:
        if self._running_since is not None:
            now = asyncio.get_running_loop().time()
            self.state.running_time_sec += now - self._running_since
            self._running_since = None

    def _running_time(self) -> float:
        extra = 0.0
        if self._running_since is not None:
            try:
                extra = asyncio.get_running_loop().time() - self._running_since
            except RuntimeError:
                extra = 0.0
        return self.state.running_time_sec + extra

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped; returns True when woken by a stop."""
        if self._stopping.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._stopping.is_set()
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _cooldown(self, spec: Optional[CooldownSpec], kind: str) -> None:
        seconds = cooldown_seconds(spec)
        if seconds <= 0:
            return
        self._emit(ManagerEvent.COOLDOWN_STARTED, {"durationMs": int(round(seconds * 1000)), "type": kind})
        interrupted = await self._sleep(seconds)
        if not interrupted:
            self._emit(ManagerEvent.COOLDOWN_ENDED, {"type": kind})

    async def _read_provider(self, provider: Optional[Provider], name: str) -> Optional[float]:
        if provider is None:
            return None
        timeout = self.settings.provider_timeout_sec
        try:
            if inspect.iscoroutinefunction(provider):
                value = await asyncio.wait_for(provider(), timeout=timeout)
            else:
                value = await asyncio.wait_for(asyncio.to_thread(provider), timeout=timeout)
                # plain callables may still hand back a coroutine
                if inspect.isawaitable(value):
                    value = await asyncio.wait_for(value, timeout=timeout)
            value = float(value) if value is not None else None
        except asyncio.TimeoutError:
            self._logger.warning("provider_timeout", provider=name)
            return None
        except Exception as e:
            # provider failures mean "no data", never a crashed loop
            self._logger.warning("provider_error", provider=name, error=str(e))
            return None
        return value

    async def _read_balance(self) -> Optional[float]:
        balance = await self._read_provider(self._balance_provider, "balance")
        if balance is not None and self.state.start_balance is None:
            self.state.start_balance = balance
        return balance

    # --------- loop ---------

    async def _run_loop(self) -> None:
        bind_session(self.config.identity, self.executor.session_id or "")
        try:
            while not self._stopping.is_set():
                if self._status == BotStatus.PAUSED:
                    await self._resumed.wait()
                    continue
                wait = await self._cycle()
                if wait:
                    await self._sleep(wait)
        except Exception as e:
            self._logger.exception("trade_loop_crashed", error=str(e))
            self._emit(ManagerEvent.ERROR, {"message": f"Trade loop crashed: {e}"})
            self._emit(ManagerEvent.EMERGENCY_STOP, {"reason": f"internal error: {e}"})
            self._halt_status = BotStatus.ERROR
        finally:
            await self._finalize()
            clear_session()

    async def _finalize(self) -> None:
        self._accumulate_running_time()
        self.performance.mark_stopped()
        self.statistics.touch()
        self.executor.end_session()
        await self._set_status(self._halt_status)
        await self._persist_progress()
        self._task = None
        self._logger.info(
            "trade_loop_finished",
            status=self._status.value,
            trades=self.state.trade_count,
            session_profit=round(self.state.session_profit, 2),
        )

    def _completion_reason(self) -> Optional[str]:
        general = self.config.advanced_settings.general
        if general.maximum_number_of_trades and self.state.trade_count >= general.maximum_number_of_trades:
            return "maximum_number_of_trades"
        if general.maximum_running_time and self._running_time() >= general.maximum_running_time:
            return "maximum_running_time"
        return None

    async def _complete(self, reason: str) -> Optional[float]:
        if self.config.advanced_settings.general.auto_restart:
            self._log("session_completed", f"Session completed ({reason}); auto-restarting", reason=reason)
            await self._persist_progress()
            self.executor.end_session()
            self._new_session()
            bind_session(self.config.identity, self.executor.session_id or "")
            self._running_since = asyncio.get_running_loop().time()
            return 0.0
        self._log("session_completed", f"Session completed ({reason}); stopping", reason=reason)
        self._request_halt(BotStatus.STOPPED)
        return None

    async def _cycle(self) -> Optional[float]:
        """Run one cycle; returns seconds to wait before the next one."""

        reason = self._completion_reason()
        if reason:
            return await self._complete(reason)

        now = self._clock()
        self.state.roll_day(now.date())

        if not self._override_schedule:
            gate = self._gate.check(now)
            if not gate.allowed:
                if not self._schedule_blocked:
                    self._schedule_blocked = True
                    self._emit(
                        ManagerEvent.SCHEDULE_PAUSED,
                        {"message": f"Outside scheduled trading hours ({gate.reason}), waiting..."},
                    )
                return self.settings.schedule_poll_sec
            self._schedule_blocked = False

        wait = await self._check_volatility()
        if wait is not None:
            return wait

        balance = await self._read_balance()
        wait = await self._enforce_risk(balance)
        if wait is not None:
            return wait if wait > 0 else None

        stake = self._size_stake(balance)
        if stake is None:
            self._logger.info("cycle_deferred", reason="base_stake_needs_balance")
            return self.settings.defer_delay_sec

        return await self._trade(stake, balance)

    async def _check_volatility(self) -> Optional[float]:
        vc = self.config.advanced_settings.volatility_controls
        if not (vc.volatility_filter or vc.pause_on_high_volatility) or self._volatility_provider is None:
            return None

        volatility = await self._read_provider(self._volatility_provider, "volatility")
        if volatility is None:
            self._logger.info("cycle_deferred", reason="volatility_unavailable")
            return self.settings.defer_delay_sec

        too_low = vc.min_volatility is not None and volatility < vc.min_volatility
        too_high = vc.max_volatility is not None and volatility > vc.max_volatility
        if (too_low or too_high) and vc.pause_on_high_volatility:
            if not self._volatility_paused:
                self._volatility_paused = True
                self._emit(ManagerEvent.VOLATILITY_PAUSE, {"volatility": volatility})
            return self.settings.schedule_poll_sec
        self._volatility_paused = False
        return None

    def _risk_snapshot(self, balance: Optional[float]) -> RiskSnapshot:
        self._killswitch.reload()
        s = self.state
        return RiskSnapshot(
            session_profit=s.session_profit,
            peak_session_profit=s.peak_session_profit,
            daily_profit=s.daily_profit,
            consecutive_losses=s.consecutive_losses,
            recovery_attempts=s.recovery_attempts,
            locked_profit=s.locked_profit,
            balance=balance,
            win_rate=self.performance.win_rate,
            total_trades=self.performance.total_runs,
            emergency_flag=self._killswitch.engaged,
            emergency_reason=self._killswitch.state.reason,
        )

    async def _enforce_risk(self, balance: Optional[float]) -> Optional[float]:
        """None = trade may proceed; 0 = loop is halting; >0 = wait and re-check."""

        decision: RiskDecision = self._risk.check(self._risk_snapshot(balance))
        if decision.action == RiskAction.CONTINUE:
            return None
        if decision.action == RiskAction.DEFER:
            self._logger.info("cycle_deferred", reason=decision.reason)
            return self.settings.defer_delay_sec

        if decision.action == RiskAction.EMERGENCY:
            self._escalate(decision.reason)
            return 0.0

        if decision.event is not None:
            self._emit(decision.event, decision.payload)

        if decision.action == RiskAction.COOLDOWN:
            self._log("recovery_cooldown", "Max recovery attempts reached; cooling down", reason=decision.reason)
            self.state.recovery_attempts = 0
            self.state.recovery_step_index = None
            await self._cooldown(self.config.advanced_settings.recovery_settings.recovery_cooldown, "recovery")
            return 0.0

        self._log("risk_stop", f"Risk limit reached ({decision.reason}); stopping", reason=decision.reason)
        self._request_halt(BotStatus.STOPPED)
        return 0.0

    def _size_stake(self, balance: Optional[float]) -> Optional[float]:
        s = self.state
        resolver = AmountResolver(
            balance=balance, win_rate=self.performance.win_rate, total_trades=self.performance.total_runs
        )
        base = resolver.resolve(self.config.amounts.base_stake)
        if base is None:
            return None
        if self.config.advanced_settings.general.compound_stake and balance and s.start_balance:
            base = base * balance / s.start_balance
        s.base_stake = base
        if self.performance.base_stake == 0:
            self.performance.base_stake = base

        if self._next_stake is None:
            decision = next_stake(self.config.strategy, StakeContext(base, s.session_profit, None, balance), s.counters)
            s.counters = decision.counters
            self._next_stake = decision.stake

        max_spec = self.config.amounts.maximum_stake
        configured_max = resolver.resolve(max_spec) if max_spec is not None else None
        sizer = PositionSizer(
            min_stake=self.executor.settings.min_stake, max_stake=self.executor.settings.max_stake
        )
        sized = sizer.size(
            self._next_stake,
            configured_max=configured_max,
            balance=balance,
            risk_per_trade_percent=self.config.advanced_settings.risk_management.risk_per_trade,
            locked_profit=s.locked_profit,
        )
        if sized.capped_by:
            self._logger.info("stake_capped", raw=round(sized.raw_stake, 4), stake=sized.stake, by=sized.capped_by)
        s.current_stake = sized.stake
        self.performance.set_stake(sized.stake)
        self._emit(ManagerEvent.STAKE_UPDATED, {"stake": sized.stake})
        return sized.stake

    async def _trade(self, stake: float, balance: Optional[float]) -> Optional[float]:
        s = self.state
        params = self.executor.build_contract_params(
            self.config.contract,
            stake,
            self.config.currency,
            overrides={"contract_type": s.current_contract_type} if s.current_contract_type else None,
        )
        self._log(
            "trade_submitting",
            f"Executing trade #{s.trade_count + 1}: {params['contract_type']} @ {stake}",
            contract_type=params["contract_type"],
            stake=stake,
        )

        try:
            result = await self.executor.execute_trade(params, self.config.account_token)
        except TradeCancelled:
            return None
        except ContractRejected as e:
            self._emit(ManagerEvent.ERROR, {"message": f"Contract rejected: {e}", "errors": e.errors})
            return self.settings.error_retry_delay_sec
        except TradeExecutionFailed as e:
            s.consecutive_failures += 1
            self._emit(ManagerEvent.ERROR, {"message": f"Trade execution failed: {e}"})
            if s.consecutive_failures >= self.settings.max_consecutive_failures:
                self._escalate(f"{s.consecutive_failures} consecutive execution failures")
                return None
            return self.settings.error_retry_delay_sec
        except SettlementUnresolved as e:
            self._emit(
                ManagerEvent.ERROR, {"message": f"Trade unresolved: {e}", "contractId": e.contract_id}
            )
            return self.config.contract.delay

        s.consecutive_failures = 0
        self._settle(result, balance)

        if self._trades_since_persist >= max(1, self.settings.persist_every_n_trades):
            await self._persist_progress()

        if self._stopping.is_set():
            return None

        # evaluate limits right away so a breach does not wait out the delay
        await self._enforce_risk(await self._read_balance())
        if self._stopping.is_set():
            return None

        await self._cooldown(self.config.advanced_settings.general.cooldown_period, "general")
        return self.config.contract.delay

    # --------- settlement ---------

    def _settle(self, result: TradeResult, balance: Optional[float]) -> None:
        s = self.state
        s.trade_count += 1
        self._trades_since_persist += 1
        s.record_profit(result.profit, self._clock().date())

        if result.is_win:
            s.record_win()
        else:
            s.record_loss()

        self.performance.record(result)
        equity = balance + result.profit if balance is not None else None
        self.statistics.record(
            result, win_streak=s.consecutive_wins, loss_streak=s.consecutive_losses, balance=equity
        )

        if result.is_win:
            self._emit(ManagerEvent.TRADE_WON, {"result": result.to_dict(), "consecutiveWins": s.consecutive_wins})
        else:
            self._emit(
                ManagerEvent.TRADE_LOST, {"result": result.to_dict(), "consecutiveLosses": s.consecutive_losses}
            )

        outcome = TradeOutcome.from_result(result)
        decision = next_stake(
            self.config.strategy,
            StakeContext(s.base_stake, s.session_profit, outcome, balance),
            s.counters,
        )
        s.counters = decision.counters
        for event in decision.events:
            self._emit(event.name, event.payload)

        if decision.lock_amount > 0:
            locked = s.lock_profit(decision.lock_amount)
            if locked > 0:
                self._emit(
                    ManagerEvent.PROFIT_LOCKED,
                    {"locked": locked, "totalLocked": s.locked_profit, "sessionProfit": round(s.session_profit, 2)},
                )

        self._next_stake = self._apply_recovery(decision.stake, result.is_win)
        self._rotate_contract_type()

        if decision.stop_reason:
            self._emit(ManagerEvent.TAKE_PROFIT_TRIGGERED, {"message": decision.stop_reason})
            self._log("strategy_stop", f"Strategy requested stop: {decision.stop_reason}")
            self._request_halt(BotStatus.STOPPED)

    def _apply_recovery(self, stake: float, is_win: bool) -> float:
        s = self.state
        previous = s.recovery_step_index
        rd = self._ladder.evaluate(s.consecutive_losses, previous)

        if rd.triggered:
            s.recovery_attempts += 1
            self._emit(
                ManagerEvent.RECOVERY_TRIGGERED,
                {"lossStreak": s.consecutive_losses, "recoveryAttempts": s.recovery_attempts},
            )
        elif rd.step_index is not None and not is_win:
            s.recovery_attempts += 1
            if rd.escalated:
                self._emit(ManagerEvent.RECOVERY_STEP_CHANGED, {"stepIndex": rd.step_index})
        elif rd.step_index is not None and rd.step_index != previous:
            # progressive de-escalation after a win
            self._emit(ManagerEvent.RECOVERY_STEP_CHANGED, {"stepIndex": rd.step_index})

        if rd.step_index is None and previous is not None:
            s.recovery_attempts = 0
            self._log("recovery_exited", "Exited recovery mode after win")

        s.recovery_step_index = rd.step_index
        return self._ladder.apply(stake, rd.step, s.base_stake)

    def _rotate_contract_type(self) -> None:
        types = self.config.contract.contract_types
        s = self.state
        if len(types) < 2:
            return
        s.alternate_counter += 1
        if s.alternate_counter >= self.config.contract.alternate_after:
            s.alternate_counter = 0
            current = types.index(s.current_contract_type) if s.current_contract_type in types else 0
            s.current_contract_type = types[(current + 1) % len(types)]
