"""Process wiring: Deriv transport + executor + manager (+ optional HTTP API)."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn

from strategybot.api.state import AppState, set_state
from strategybot.infrastructure.api.bot_api_client import BotApiClient
from strategybot.infrastructure.deriv.deriv_ws_client import DerivAPIError, DerivWSClient, DerivWSError
from strategybot.infrastructure.logging.logging import configure_logging, get_logger
from strategybot.infrastructure.utils.config import AppSettings, load_bot_configuration, load_config
from strategybot.models.bot_config import BotConfiguration
from strategybot.models.errors import PersistenceError
from strategybot.services.execution.contract_gateway import DerivContractGateway
from strategybot.services.execution.executor import ExecutorSettings, TradingBotExecutor
from strategybot.services.manager.trading_bot_manager import BotStatus, LoopSettings, TradingBotManager
from strategybot.services.risk.killswitch import KillSwitch


class BalanceTracker:
    """Keeps the latest account balance from the Deriv balance stream."""

    def __init__(self, client: DerivWSClient) -> None:
        self.client = client
        self.balance: Optional[float] = None
        self.currency: Optional[str] = None
        self._logger = get_logger("balance")

    async def _on_message(self, msg: Dict[str, Any]) -> None:
        data = msg.get("balance") or {}
        if data.get("balance") is not None:
            self.balance = float(data["balance"])
            self.currency = data.get("currency") or self.currency
            self._logger.debug("balance_updated", balance=self.balance)

    async def start(self) -> None:
        first = await self.client.subscribe("balance", {"balance": 1}, self._on_message)
        if first is not None:
            await self._on_message(first)
        self._logger.info("balance", balance=self.balance, currency=self.currency)

    async def current(self) -> Optional[float]:
        return self.balance


def build_executor(
    settings: AppSettings, client: DerivWSClient, api_client: Optional[BotApiClient]
) -> TradingBotExecutor:
    ex = settings.executor
    return TradingBotExecutor(
        DerivContractGateway(client, request_timeout_sec=settings.deriv.request_timeout_sec),
        api_client=api_client,
        settings=ExecutorSettings(
            max_retry_attempts=ex.max_retry_attempts,
            retry_delay_base=ex.retry_delay_base_sec,
            max_retry_delay=ex.max_retry_delay_sec,
            min_stake=ex.min_stake,
            max_stake=ex.max_stake,
            settlement_timeout_sec=ex.settlement_timeout_sec,
        ),
    )


def build_manager(
    settings: AppSettings,
    bot: BotConfiguration,
    executor: TradingBotExecutor,
    balance: BalanceTracker,
    killswitch: KillSwitch,
) -> TradingBotManager:
    lc = settings.loop
    return TradingBotManager(
        bot,
        executor,
        balance_provider=balance.current,
        killswitch=killswitch,
        settings=LoopSettings(
            schedule_poll_sec=lc.schedule_poll_sec,
            defer_delay_sec=lc.defer_delay_sec,
            error_retry_delay_sec=lc.error_retry_delay_sec,
            max_consecutive_failures=lc.max_consecutive_failures,
            persist_every_n_trades=lc.persist_every_n_trades,
            provider_timeout_sec=lc.provider_timeout_sec,
        ),
    )


async def _resolve_bot(settings: AppSettings, executor: TradingBotExecutor, bot_id: Optional[str]) -> BotConfiguration:
    if bot_id:
        bot = await executor.load_bot(bot_id)
        if not bot.account_token and settings.deriv.api_token:
            bot = bot.model_copy(update={"account_token": settings.deriv.api_token})
        return bot
    return load_bot_configuration(Path(settings.bot_config_path))


async def run_engine(
    config_path: Optional[Path] = None,
    *,
    bot_id: Optional[str] = None,
    serve_api: bool = False,
    override_schedule: bool = False,
) -> None:
    settings = load_config(config_path)
    configure_logging(settings.log_level, json_logs=settings.json_logs)
    log = get_logger("engine")
    log.info("config_loaded", app_id=settings.deriv.app_id, token_len=len(settings.deriv.api_token))

    api_client: Optional[BotApiClient] = None
    if settings.persistence_api.enabled:
        api_client = BotApiClient(
            settings.persistence_api.base_url,
            auth_token=settings.persistence_api.auth_token or None,
            timeout_sec=settings.persistence_api.timeout_sec,
        )

    client = DerivWSClient(
        websocket_url=settings.deriv.websocket_url,
        app_id=settings.deriv.app_id,
        api_token=settings.deriv.api_token or None,
        request_timeout_sec=settings.deriv.request_timeout_sec,
        heartbeat_interval_sec=settings.deriv.heartbeat_interval_sec,
    )
    killswitch = KillSwitch(Path(settings.killswitch_path))
    executor = build_executor(settings, client, api_client)

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    try:
        bot = await _resolve_bot(settings, executor, bot_id)
        log.info("bot_loaded", bot_id=bot.identity, strategy=bot.strategy.kind, market=bot.contract.market)

        await client.start()
        await client.wait_until_connected()
        if bot.account_token and bot.account_token != client.token:
            await client.authorize(bot.account_token)

        balance = BalanceTracker(client)
        await balance.start()

        manager = build_manager(settings, bot, executor, balance, killswitch)
        set_state(AppState(manager=manager, killswitch=killswitch))

        if serve_api:
            server = uvicorn.Server(
                uvicorn.Config("strategybot.api.server:app", host=settings.api.host, port=settings.api.port)
            )
            server_task = asyncio.create_task(server.serve())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(manager.stop()))
            except NotImplementedError:
                pass

        await manager.start(override_schedule=override_schedule)
        await manager.wait_closed()

        # with the API up, an operator may restart the bot; keep serving
        if server_task is not None:
            await server_task
        log.info("engine_finished", status=manager.status.value, error=manager.status == BotStatus.ERROR)
    except (DerivWSError, DerivAPIError, PersistenceError) as e:
        log.error("engine_startup_failed", error=str(e))
        raise
    finally:
        if server is not None:
            server.should_exit = True
        if server_task is not None:
            await asyncio.gather(server_task, return_exceptions=True)
        await executor.drain()
        await client.stop()
        if api_client is not None:
            await api_client.close()
        set_state(None)
