from __future__ import annotations

import asyncio

import pytest

from conftest import FakeBotApi, FakeGateway, Recorder, SlowFailingGateway, make_config, make_executor
from strategybot.models.bot_config import ContractSpec
from strategybot.models.errors import (
    ContractRejected,
    PersistenceError,
    SettlementUnresolved,
    TradeCancelled,
    TradeExecutionFailed,
    TransientExecutionError,
)
from strategybot.services.execution.executor import TradingBotExecutor

DIGIT = ContractSpec(market="R_100", contract_type="DIGITMATCH", prediction="5", duration=1, duration_unit="t")
TOKEN = "a1-test-token-123"


def test_digit_contract_params_validate():
    executor = make_executor(FakeGateway())
    params = executor.build_contract_params(DIGIT, 1.0, "USD")

    assert params == {
        "amount": 1.0,
        "basis": "stake",
        "contract_type": "DIGITMATCH",
        "currency": "USD",
        "symbol": "R_100",
        "duration": 1,
        "duration_unit": "t",
        "barrier": "5",
    }
    result = executor.validate_contract_params(params)
    assert result.valid and result.errors == []


def test_missing_barrier_names_the_field():
    executor = make_executor(FakeGateway())
    params = executor.build_contract_params(DIGIT.model_copy(update={"prediction": None}), 1.0, "USD")
    result = executor.validate_contract_params(params)
    assert not result.valid
    assert any(e.startswith("barrier") for e in result.errors)


def test_overrides_are_applied_last():
    executor = make_executor(FakeGateway())
    spec = ContractSpec(market="R_50", contract_type="CALL|PUT", multiplier=10)
    params = executor.build_contract_params(spec, 2.346, "usd", overrides={"contract_type": "PUT"})
    assert params["contract_type"] == "PUT"
    assert params["amount"] == 2.35
    assert params["multiplier"] == 10
    assert "barrier" not in params


def test_validation_bounds_and_units():
    executor = make_executor(FakeGateway())
    bad = {
        "amount": 0.1,
        "basis": "stake",
        "contract_type": "CALL",
        "currency": "USD",
        "symbol": "R_100",
        "duration": 0,
        "duration_unit": "x",
    }
    errors = executor.validate_contract_params(bad).errors
    assert any(e.startswith("amount") for e in errors)
    assert any(e.startswith("duration:") for e in errors)
    assert any(e.startswith("duration_unit") for e in errors)


def test_successful_trade_records_result():
    gateway = FakeGateway([True])
    executor = make_executor(gateway)
    rec = Recorder(executor.events)
    executor.start_session()
    params = executor.build_contract_params(DIGIT, 2.0, "USD")

    result = asyncio.run(executor.execute_trade(params, TOKEN))

    assert result.is_win
    assert result.stake == 2.0
    assert result.profit == pytest.approx(1.9)
    assert result.session_id == executor.session_id
    assert executor.trade_history == [result]
    assert rec.names() == ["session_started", "trade_attempt", "trade_executed"]
    assert gateway.authorized == [TOKEN]


def test_three_transient_failures_exhaust_retries():
    gateway = FakeGateway([TransientExecutionError("net")] * 3)
    executor = make_executor(gateway)
    rec = Recorder(executor.events)
    params = executor.build_contract_params(DIGIT, 1.0, "USD")

    with pytest.raises(TradeExecutionFailed) as exc:
        asyncio.run(executor.execute_trade(params, TOKEN))

    assert exc.value.attempts == 3
    assert rec.count("trade_attempt") == 3
    assert rec.count("trade_all_attempts_failed") == 1
    assert [e.payload["attempt"] for e in rec.of("trade_attempt")] == [1, 2, 3]
    assert executor.trade_history == []


def test_transient_failure_then_success():
    gateway = FakeGateway([TransientExecutionError("net"), False])
    executor = make_executor(gateway)
    result = asyncio.run(executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN))
    assert not result.is_win
    assert result.profit == -1.0
    assert gateway.proposals == 2


def test_rejection_is_not_retried():
    gateway = FakeGateway([ContractRejected("bad barrier")])
    executor = make_executor(gateway)
    rec = Recorder(executor.events)
    with pytest.raises(ContractRejected):
        asyncio.run(executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN))
    assert rec.count("trade_attempt") == 1
    assert rec.count("trade_all_attempts_failed") == 0


def test_invalid_params_rejected_before_any_attempt():
    gateway = FakeGateway()
    executor = make_executor(gateway)
    params = executor.build_contract_params(DIGIT, 0.1, "USD")
    with pytest.raises(ContractRejected) as exc:
        asyncio.run(executor.execute_trade(params, TOKEN))
    assert exc.value.errors
    assert gateway.proposals == 0


def test_settlement_failure_is_unresolved():
    gateway = FakeGateway([True])
    gateway.settlement_error = asyncio.TimeoutError()
    executor = make_executor(gateway)
    rec = Recorder(executor.events)

    with pytest.raises(SettlementUnresolved) as exc:
        asyncio.run(executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN))

    assert exc.value.contract_id == gateway.bought[0]["contract_id"]
    assert len(executor.unresolved) == 1
    assert rec.count("trade_unresolved") == 1
    assert executor.trade_history == []


def test_cancel_pending_aborts_backoff():
    gateway = FakeGateway([TransientExecutionError("net")] * 3)
    executor = TradingBotExecutor(gateway)  # default 1s base backoff

    async def scenario():
        task = asyncio.create_task(executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN))
        for _ in range(10):
            await asyncio.sleep(0)
            if executor.cancel_pending():
                break
        return await asyncio.gather(task, return_exceptions=True)

    (outcome,) = asyncio.run(scenario())
    assert isinstance(outcome, TradeCancelled)
    assert gateway.proposals == 1


def test_cancel_during_inflight_proposal_drops_the_retry():
    gateway = SlowFailingGateway(delay=0.05, default_win=True)
    executor = make_executor(gateway)

    async def scenario():
        task = asyncio.create_task(executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN))
        await asyncio.sleep(0.01)
        cancelled = executor.cancel_pending()
        outcome = await asyncio.gather(task, return_exceptions=True)
        return cancelled, outcome[0]

    cancelled, outcome = asyncio.run(scenario())
    assert cancelled is True
    assert isinstance(outcome, TradeCancelled)
    assert gateway.proposals == 1
    assert gateway.bought == []
    assert executor.cancel_pending() is False


def test_trade_record_is_persisted():
    api = FakeBotApi()
    executor = make_executor(FakeGateway([True]), api)
    executor.current_bot = make_config()

    async def scenario():
        executor.start_session()
        await executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN)
        await executor.drain()

    asyncio.run(scenario())
    name, record = api.calls[0]
    assert name == "create_trade_record"
    assert record["botId"] == "bot-1"
    assert record["isWin"] is True


def test_trade_persist_failure_is_reported_not_raised():
    api = FakeBotApi(fail=True)
    executor = make_executor(FakeGateway([False]), api)
    rec = Recorder(executor.events)

    async def scenario():
        result = await executor.execute_trade(executor.build_contract_params(DIGIT, 1.0, "USD"), TOKEN)
        await executor.drain()
        return result

    result = asyncio.run(scenario())
    assert not result.is_win
    assert rec.count("trade_persist_error") == 1


def test_crud_needs_api_but_updates_are_optional():
    executor = make_executor(FakeGateway())
    with pytest.raises(PersistenceError):
        asyncio.run(executor.create_bot(make_config()))
    assert asyncio.run(executor.update_status("bot-1", "start")) is None


def test_session_ids_are_unique():
    executor = make_executor(FakeGateway())
    first = executor.start_session()
    executor.end_session()
    second = executor.start_session()
    assert first != second
    assert second.startswith("session_")
