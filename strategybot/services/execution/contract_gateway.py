"""Brokerage gateway: proposal -> buy -> settlement.

The executor only talks to the ``ContractGateway`` protocol; the Deriv
implementation below maps transport failures to TransientExecutionError and
API refusals of a proposal to ContractRejected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from strategybot.infrastructure.deriv.deriv_ws_client import DerivAPIError, DerivWSClient, DerivWSError
from strategybot.infrastructure.logging.logging import get_logger
from strategybot.models.errors import ContractRejected, TransientExecutionError
from strategybot.models.trade_models import ContractParams

JsonDict = Dict[str, Any]


@dataclass(frozen=True)
class Proposal:
    proposal_id: str
    ask_price: float
    payout: float


@dataclass(frozen=True)
class PurchasedContract:
    contract_id: int
    buy_price: float
    payout: float
    purchase_time: Optional[datetime] = None


@dataclass(frozen=True)
class SettledContract:
    contract_id: int
    buy_price: float
    sell_price: float
    payout: float
    profit: float
    is_win: bool
    entry_spot: Optional[float] = None
    exit_spot: Optional[float] = None
    sell_time: Optional[datetime] = None


class ContractGateway(Protocol):
    async def ensure_authorized(self, credential: str) -> None: ...

    async def propose(self, params: ContractParams) -> Proposal: ...

    async def buy(self, proposal: Proposal, price: float) -> PurchasedContract: ...

    async def wait_for_settlement(self, contract: PurchasedContract, timeout_sec: float) -> SettledContract: ...


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


def settled_from_poc(data: JsonDict, fallback_price: float) -> SettledContract:
    buy_price = float(data.get("buy_price") or fallback_price)
    sell_price = float(data.get("sell_price") or 0.0)
    profit = data.get("profit")
    profit = round(float(profit), 2) if profit is not None else round(sell_price - buy_price, 2)
    status = str(data.get("status") or "")
    return SettledContract(
        contract_id=int(data["contract_id"]),
        buy_price=buy_price,
        sell_price=sell_price,
        payout=float(data.get("payout") or 0.0),
        profit=profit,
        is_win=status == "won" if status in ("won", "lost") else profit > 0,
        entry_spot=_float(data.get("entry_spot") or data.get("entry_tick")),
        exit_spot=_float(data.get("exit_tick") or data.get("sell_spot")),
        sell_time=_ts(data.get("sell_time") or data.get("date_expiry")),
    )


class DerivContractGateway:
    def __init__(self, client: DerivWSClient, *, request_timeout_sec: float = 15.0) -> None:
        self.client = client
        self.request_timeout_sec = request_timeout_sec
        self._logger = get_logger("contract_gateway")

    async def ensure_authorized(self, credential: str) -> None:
        if not credential or credential == self.client.token:
            return
        try:
            await self.client.authorize(credential)
        except DerivWSError as e:
            raise TransientExecutionError(str(e)) from e
        except DerivAPIError as e:
            raise ContractRejected(f"authorize rejected: {e}", code=e.code) from e

    async def propose(self, params: ContractParams) -> Proposal:
        request: JsonDict = {"proposal": 1, **params}
        try:
            resp = await self.client.request(request, timeout=self.request_timeout_sec)
        except DerivWSError as e:
            raise TransientExecutionError(f"proposal: {e}") from e
        except DerivAPIError as e:
            raise ContractRejected(f"proposal rejected: {e}", code=e.code) from e

        data = resp.get("proposal") or {}
        if not data.get("id"):
            raise TransientExecutionError("proposal_missing_id")
        return Proposal(
            proposal_id=str(data["id"]),
            ask_price=float(data.get("ask_price") or params["amount"]),
            payout=float(data.get("payout") or 0.0),
        )

    async def buy(self, proposal: Proposal, price: float) -> PurchasedContract:
        try:
            resp = await self.client.request(
                {"buy": proposal.proposal_id, "price": float(price)}, timeout=self.request_timeout_sec
            )
        except (DerivWSError, DerivAPIError) as e:
            # price moves and expired proposals are worth a fresh proposal
            raise TransientExecutionError(f"buy: {e}") from e

        data = resp.get("buy") or {}
        if data.get("contract_id") is None:
            raise TransientExecutionError("buy_missing_contract_id")
        return PurchasedContract(
            contract_id=int(data["contract_id"]),
            buy_price=float(data.get("buy_price") or price),
            payout=float(data.get("payout") or proposal.payout),
            purchase_time=_ts(data.get("purchase_time") or data.get("start_time")),
        )

    async def wait_for_settlement(self, contract: PurchasedContract, timeout_sec: float) -> SettledContract:
        loop = asyncio.get_running_loop()
        settled: asyncio.Future[SettledContract] = loop.create_future()
        name = f"poc:{contract.contract_id}"

        async def on_update(msg: JsonDict) -> None:
            data = msg.get("proposal_open_contract") or {}
            if data.get("is_sold") and not settled.done():
                settled.set_result(settled_from_poc(data, contract.buy_price))

        try:
            first = await self.client.subscribe(
                name, {"proposal_open_contract": 1, "contract_id": contract.contract_id}, on_update
            )
            if first is not None:
                await on_update(first)
            return await asyncio.wait_for(settled, timeout=timeout_sec)
        finally:
            try:
                await self.client.unsubscribe(name)
            except (DerivWSError, DerivAPIError) as e:
                self._logger.warning("poc_unsubscribe_failed", contract_id=contract.contract_id, error=str(e))
