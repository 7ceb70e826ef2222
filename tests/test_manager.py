from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import replace
from datetime import datetime

import pytest
import structlog

from conftest import FAST_LOOP, FakeBotApi, FakeGateway, Recorder, SlowFailingGateway, make_config, make_executor
from strategybot.models.bot_config import DalembertParams
from strategybot.models.errors import ConfigInvalid, ScheduleBlocked, TransientExecutionError
from strategybot.services.manager.trading_bot_manager import BotStatus, TradingBotManager
from strategybot.services.risk.killswitch import KillSwitch

SUNDAY = datetime(2026, 10, 18, 10, 0)
WEEKDAYS_ONLY = {
    "type": "weekly",
    "isEnabled": True,
    "startTime": "00:00",
    "endTime": "23:59",
    "daysOfWeek": [1, 2, 3, 4, 5],
}


def outcomes(pattern: str):
    return [ch == "W" for ch in pattern]


def max_trades(n: int, **general):
    return {"general_settings_section": {"maximum_number_of_trades": n, **general}}


def build(config, gateway, api=None, **kwargs) -> TradingBotManager:
    return TradingBotManager(config, make_executor(gateway, api), settings=FAST_LOOP, **kwargs)


def run_to_end(manager: TradingBotManager, **start_kwargs) -> None:
    async def scenario():
        await manager.start(**start_kwargs)
        await manager.wait_closed()

    asyncio.run(scenario())


def test_martingale_stakes_through_the_loop():
    gateway = FakeGateway(outcomes("LLLWL"))
    manager = build(make_config(advanced_settings=max_trades(5)), gateway)
    rec = Recorder(manager.events)

    run_to_end(manager)

    assert gateway.stakes == [1, 2, 4, 8, 1]
    assert manager.status == BotStatus.STOPPED
    assert rec.count("trade_lost") == 4 and rec.count("trade_won") == 1
    assert manager.state.trade_count == 5
    assert manager.performance.total_runs == 5
    assert manager.statistics.lifetime_runs == 5


def test_recovery_step_multiplies_stake_once_triggered():
    gateway = FakeGateway(outcomes("LLWL"))
    config = make_config(
        advanced_settings=max_trades(4),
        recovery_steps=[{"lossStreak": 2, "multiplier": 1.2, "action": "increase"}],
    )
    manager = build(config, gateway)
    rec = Recorder(manager.events)

    run_to_end(manager)

    # 2nd loss arms the step (4 * 1.2), the win clears it
    assert gateway.stakes == [1, 2, 4.8, 1]
    assert rec.count("recovery_triggered") == 1
    assert rec.of("recovery_triggered")[0].payload["lossStreak"] == 2
    assert manager.state.recovery_step_index is None


def test_recovery_steps_accept_nested_api_shape():
    config = make_config(recovery_steps={"risk_steps": [{"lossStreak": 3, "multiplier": 1.5}]})
    assert config.recovery_steps[0].loss_streak == 3


def test_stop_loss_at_exact_limit_halts_and_stop_is_idempotent():
    gateway = FakeGateway(outcomes("LLLL"))
    config = make_config(amounts={"stop_loss": {"type": "fixed", "value": 3}})
    manager = build(config, gateway)
    rec = Recorder(manager.events)

    async def scenario():
        await manager.start()
        await manager.wait_closed()
        changes = rec.count("status_changed")
        await manager.stop()
        return changes

    changes = asyncio.run(scenario())

    assert gateway.stakes == [1, 2]
    assert rec.count("stop_loss_triggered") == 1
    assert rec.of("stop_loss_triggered")[0].payload["sessionProfit"] == -3.0
    assert manager.status == BotStatus.STOPPED
    assert rec.count("status_changed") == changes


def test_take_profit_stops_the_loop():
    gateway = FakeGateway(outcomes("WWWW"))
    config = make_config(amounts={"take_profit": {"type": "fixed", "value": 1.5}})
    manager = build(config, gateway)
    rec = Recorder(manager.events)

    run_to_end(manager)

    assert len(gateway.stakes) == 2
    assert rec.count("take_profit_triggered") == 1


def test_contract_type_alternates():
    gateway = FakeGateway(outcomes("WLWL"))
    config = make_config(
        contract={"contractType": "CALL|PUT", "alternateAfter": 1},
        advanced_settings=max_trades(4),
    )
    manager = build(config, gateway)

    run_to_end(manager)

    assert [t.contract_type for t in manager.trade_history] == ["CALL", "PUT", "CALL", "PUT"]


def test_percentage_base_stake_uses_balance_provider():
    gateway = FakeGateway(outcomes("W"))
    config = make_config(
        amounts={"base_stake": {"type": "percentage", "value": 1}},
        advanced_settings=max_trades(1),
    )
    manager = build(config, gateway, balance_provider=lambda: 200.0)

    run_to_end(manager)

    assert gateway.stakes == [2.0]
    assert manager.state.start_balance == 200.0


def test_persistence_failures_are_reported_and_trading_continues():
    gateway = FakeGateway(outcomes("WL"))
    api = FakeBotApi(fail=True)
    manager = build(make_config(advanced_settings=max_trades(2)), gateway, api)
    rec = Recorder(manager.events)

    run_to_end(manager)

    assert len(gateway.stakes) == 2
    assert rec.count("persist_error") >= 1
    assert manager.status == BotStatus.STOPPED


def test_status_transitions_are_persisted():
    gateway = FakeGateway(outcomes("WW"))
    api = FakeBotApi()
    manager = build(make_config(advanced_settings=max_trades(2)), gateway, api)
    rec = Recorder(manager.events)

    async def scenario():
        await manager.start()
        await manager.pause()
        await asyncio.sleep(0.02)
        traded_while_paused = len(gateway.stakes)
        await manager.resume()
        await manager.wait_closed()
        return traded_while_paused

    assert asyncio.run(scenario()) == 0
    transitions = [(e.payload["from"], e.payload["to"]) for e in rec.of("status_changed")]
    assert transitions == [
        ("IDLE", "RUNNING"),
        ("RUNNING", "PAUSED"),
        ("PAUSED", "RUNNING"),
        ("RUNNING", "STOPPED"),
    ]
    statuses = [c[2] for c in api.calls if c[0] == "update_status"]
    assert statuses == ["start", "pause", "resume", "stop"]
    assert "update_statistics" in api.names()


def test_invalid_configuration_blocks_start():
    manager = build(make_config(accountToken=""), FakeGateway())
    rec = Recorder(manager.events)

    with pytest.raises(ConfigInvalid) as exc:
        asyncio.run(manager.start())

    assert "account_token is required" in exc.value.errors
    assert rec.count("error") == 1
    assert manager.status == BotStatus.IDLE


def test_digit_contract_without_prediction_is_invalid():
    config = make_config(contract={"contractType": "DIGITDIFF", "prediction": ""})
    assert any("prediction" in e for e in config.validation_errors())


def test_schedule_blocked_when_not_waiting():
    config = make_config(schedule=WEEKDAYS_ONLY)
    manager = build(config, FakeGateway(), clock=lambda: SUNDAY)

    with pytest.raises(ScheduleBlocked):
        asyncio.run(manager.start(wait_for_schedule=False))
    assert manager.status == BotStatus.IDLE


def test_schedule_wait_emits_once_and_never_trades():
    gateway = FakeGateway()
    manager = build(make_config(schedule=WEEKDAYS_ONLY), gateway, clock=lambda: SUNDAY)
    rec = Recorder(manager.events)

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.05)
        await manager.stop()

    asyncio.run(scenario())

    assert rec.count("schedule_paused") == 1
    assert gateway.stakes == []
    assert manager.status == BotStatus.STOPPED


def test_override_schedule_trades_anyway():
    gateway = FakeGateway(outcomes("W"))
    config = make_config(schedule=WEEKDAYS_ONLY, advanced_settings=max_trades(1))
    manager = build(config, gateway, clock=lambda: SUNDAY)

    run_to_end(manager, override_schedule=True)

    assert len(gateway.stakes) == 1


def test_killswitch_moves_bot_to_error():
    killswitch = KillSwitch()
    killswitch.engage("operator halt")
    gateway = FakeGateway()
    manager = build(make_config(), gateway, killswitch=killswitch)
    rec = Recorder(manager.events)

    run_to_end(manager)

    assert manager.status == BotStatus.ERROR
    assert rec.of("emergency_stop")[0].payload["reason"] == "operator halt"
    assert gateway.stakes == []


def test_repeated_execution_failures_escalate_to_error():
    gateway = FakeGateway([TransientExecutionError("network down")] * 15)
    manager = build(make_config(), gateway)
    rec = Recorder(manager.events)

    run_to_end(manager)

    assert manager.status == BotStatus.ERROR
    assert gateway.proposals == 15
    assert rec.count("emergency_stop") == 1
    assert manager.statistics.lifetime_runs == 0


def test_emergency_stop_while_running():
    manager = build(make_config(), FakeGateway(default_win=True))
    rec = Recorder(manager.events)

    async def scenario():
        await manager.start()
        await manager.emergency_stop("manual")

    asyncio.run(scenario())

    assert manager.status == BotStatus.ERROR
    assert rec.of("emergency_stop")[0].payload["reason"] == "manual"


def test_update_strategy_resets_and_persists():
    api = FakeBotApi()
    manager = build(make_config(), FakeGateway(), api)
    rec = Recorder(manager.events)
    manager.state.consecutive_losses = 3

    asyncio.run(manager.update_strategy(DalembertParams()))

    assert manager.config.strategy.kind == "dalembert"
    assert manager.state.consecutive_losses == 0
    assert rec.count("strategy_reset") == 1
    name, bot_id, payload = api.calls[0]
    assert (name, bot_id) == ("update_bot", "bot-1")
    assert payload["strategy"]["kind"] == "dalembert"


def test_snapshot_uses_api_keys():
    manager = build(make_config(), FakeGateway())
    snap = manager.snapshot()
    assert snap["status"] == "IDLE"
    assert snap["strategy"] == "martingale"
    assert "sessionProfit" in snap


def test_slow_balance_provider_defers_trading():
    async def slow_balance():
        await asyncio.sleep(1.0)
        return 100.0

    gateway = FakeGateway()
    config = make_config(amounts={"base_stake": {"type": "percentage", "value": 1}})
    manager = TradingBotManager(
        config,
        make_executor(gateway),
        balance_provider=slow_balance,
        settings=replace(FAST_LOOP, provider_timeout_sec=0.01),
    )

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.1)
        await manager.stop()

    asyncio.run(scenario())

    assert gateway.stakes == []
    assert manager.status == BotStatus.STOPPED


def test_general_cooldown_after_each_trade():
    gateway = FakeGateway(outcomes("W"))
    config = make_config(advanced_settings=max_trades(1, cooldown_period={"duration": 0.01, "unit": "s"}))
    manager = build(config, gateway)
    rec = Recorder(manager.events)

    run_to_end(manager)

    started = rec.of("cooldown_started")
    assert len(started) == 1
    assert started[0].payload == {"durationMs": 10, "type": "general"}
    assert rec.count("cooldown_ended") == 1


def test_stop_during_inflight_proposal_buys_nothing():
    gateway = SlowFailingGateway(delay=0.05, default_win=True)
    manager = build(make_config(), gateway)

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.01)
        await manager.stop()

    asyncio.run(scenario())

    assert gateway.proposals == 1
    assert gateway.bought == []
    assert manager.status == BotStatus.STOPPED
    assert manager.state.consecutive_failures == 0


def scripted(*readings):
    queue = deque(readings)
    return lambda: queue.popleft() if queue else 1.0


def volatility_config(**general):
    return make_config(
        advanced_settings={
            "general_settings_section": {"maximum_number_of_trades": 1, **general},
            "volatility_controls_section": {
                "volatility_filter": True,
                "min_volatility": 0.5,
                "max_volatility": 5.0,
                "pause_on_high_volatility": True,
            },
        }
    )


def test_volatility_out_of_range_pauses_once_then_resumes():
    gateway = FakeGateway(outcomes("W"))
    manager = build(volatility_config(), gateway, volatility_provider=scripted(9.0, 9.0, 9.0))
    rec = Recorder(manager.events)

    run_to_end(manager)

    paused = rec.of("volatility_pause")
    assert len(paused) == 1
    assert paused[0].payload == {"volatility": 9.0}
    assert gateway.stakes == [1]


def test_volatility_out_of_range_never_trades():
    gateway = FakeGateway()
    manager = build(volatility_config(), gateway, volatility_provider=lambda: 0.1)
    rec = Recorder(manager.events)

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.05)
        await manager.stop()

    asyncio.run(scenario())

    assert rec.count("volatility_pause") == 1
    assert gateway.stakes == []


def test_missing_volatility_reading_defers_the_cycle():
    gateway = FakeGateway(outcomes("W"))
    manager = build(volatility_config(), gateway, volatility_provider=scripted(None, None, 2.0))
    rec = Recorder(manager.events)

    run_to_end(manager)

    assert rec.count("volatility_pause") == 0
    assert gateway.stakes == [1]


def test_timed_out_volatility_reading_defers_the_cycle():
    async def stuck():
        await asyncio.sleep(1.0)
        return 2.0

    gateway = FakeGateway()
    manager = TradingBotManager(
        volatility_config(),
        make_executor(gateway),
        volatility_provider=stuck,
        settings=replace(FAST_LOOP, provider_timeout_sec=0.01),
    )

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.1)
        await manager.stop()

    asyncio.run(scenario())

    assert gateway.stakes == []
    assert manager.status == BotStatus.STOPPED


def test_plain_callable_returning_coroutine_is_awaited():
    async def fetch_balance():
        return 200.0

    gateway = FakeGateway(outcomes("W"))
    config = make_config(
        amounts={"base_stake": {"type": "percentage", "value": 1}},
        advanced_settings=max_trades(1),
    )
    manager = build(config, gateway, balance_provider=lambda: fetch_balance())

    run_to_end(manager)

    assert gateway.stakes == [2.0]


def test_auto_restart_rebinds_log_session():
    seen = []

    class ContextGateway(FakeGateway):
        async def propose(self, params):
            seen.append(structlog.contextvars.get_contextvars().get("session_id"))
            return await super().propose(params)

    gateway = ContextGateway(default_win=True)
    manager = build(make_config(advanced_settings=max_trades(1, auto_restart=True)), gateway)
    rec = Recorder(manager.executor.events)

    async def scenario():
        await manager.start()
        while len(seen) < 3:
            await asyncio.sleep(0.005)
        await manager.stop()

    asyncio.run(scenario())

    started = [e.payload["sessionId"] for e in rec.of("session_started")]
    assert len(set(seen[:3])) == 3
    assert seen[:3] == started[:3]
