from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FAST_LOOP, FakeGateway, make_config, make_executor
from strategybot.api.server import app
from strategybot.api.state import AppState, set_state
from strategybot.services.manager.trading_bot_manager import TradingBotManager
from strategybot.services.risk.killswitch import KillSwitch


def _install(config, tmp_path) -> AppState:
    killswitch = KillSwitch(tmp_path / "killswitch.json")
    manager = TradingBotManager(
        config, make_executor(FakeGateway(default_win=True)), killswitch=killswitch, settings=FAST_LOOP
    )
    state = AppState(manager=manager, killswitch=killswitch)
    set_state(state)
    return state


@pytest.fixture(autouse=True)
def _reset_state():
    yield
    set_state(None)


def test_health_and_snapshot(tmp_path):
    _install(make_config(), tmp_path)
    with TestClient(app) as client:
        assert client.get("/health").json() == {"ok": True}
        body = client.get("/bot").json()
        assert body["status"] == "IDLE"
        assert body["botId"] == "bot-1"


def test_start_with_invalid_config_returns_422(tmp_path):
    _install(make_config(accountToken=""), tmp_path)
    with TestClient(app) as client:
        resp = client.post("/bot/start", json={})
        assert resp.status_code == 422
        assert "account_token is required" in resp.json()["detail"]["errors"]

        events = client.get("/bot/events").json()
        assert events[-1]["event"] == "error"


def test_start_trade_and_stop(tmp_path):
    config = make_config(advanced_settings={"general_settings_section": {"maximum_number_of_trades": 1}})
    _install(config, tmp_path)
    with TestClient(app) as client:
        assert client.post("/bot/start", json={}).json()["status"] == "RUNNING"
        assert client.post("/bot/stop").json()["status"] == "STOPPED"

        stats = client.get("/bot/statistics").json()
        assert set(stats) == {"performance", "statistics"}
        assert isinstance(client.get("/bot/trades").json(), list)


def test_killswitch_round_trip(tmp_path):
    state = _install(make_config(), tmp_path)
    with TestClient(app) as client:
        assert client.get("/killswitch").json()["enabled"] is False
        assert client.post("/killswitch/enable", json={"reason": "drill"}).json() == {
            "enabled": True,
            "reason": "drill",
        }
        assert state.killswitch.engaged
        assert (tmp_path / "killswitch.json").exists()
        assert client.post("/killswitch/disable").json()["enabled"] is False
