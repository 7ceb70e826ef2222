"""REST client for the bot persistence API (aiohttp).

Responses are unwrapped from ``{"data": ...}`` when the API nests them.
Every failure, HTTP or network, surfaces as PersistenceError; callers decide
whether it matters (the trade loop never lets it stop a bot).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from strategybot.infrastructure.logging.logging import get_logger
from strategybot.models.errors import PersistenceError

JsonDict = Dict[str, Any]


class BotApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        auth_token: Optional[str] = None,
        timeout_sec: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session = session
        self._owns_session = session is None
        self._logger = get_logger("bot_api")

    def set_auth_token(self, token: Optional[str]) -> None:
        self.auth_token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, endpoint: str, body: Optional[JsonDict] = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            async with self._get_session().request(
                method, url, headers=self._headers(), data=json.dumps(body) if body is not None else None
            ) as resp:
                text = await resp.text()
                data: Any = json.loads(text) if text else {}
                if resp.status >= 400:
                    message = data.get("message") or data.get("error") if isinstance(data, dict) else None
                    raise PersistenceError(
                        f"{method} {endpoint} failed: {message or f'HTTP {resp.status}'}", status_code=resp.status
                    )
        except PersistenceError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._logger.warning("api_request_failed", method=method, endpoint=endpoint, error=str(e))
            raise PersistenceError(f"{method} {endpoint} failed: {e}") from e

        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data

    # --------- bot records ---------

    async def create_bot(self, payload: JsonDict) -> JsonDict:
        return await self._request("POST", "/trading-bots", payload)

    async def get_bot(self, bot_id: str) -> JsonDict:
        return await self._request("GET", f"/trading-bots/{bot_id}")

    async def update_bot(self, bot_id: str, updates: JsonDict) -> JsonDict:
        return await self._request("PATCH", f"/trading-bots/{bot_id}", updates)

    async def delete_bot(self, bot_id: str) -> Any:
        return await self._request("DELETE", f"/trading-bots/{bot_id}")

    async def update_status(self, bot_id: str, status: str) -> Any:
        return await self._request("POST", f"/trading-bots/{bot_id}/{status.lower()}")

    async def update_realtime_performance(self, bot_id: str, performance: JsonDict) -> Any:
        return await self._request(
            "PATCH", f"/trading-bots/{bot_id}/update-realtime-performance", {"realtimePerformance": performance}
        )

    async def update_statistics(self, bot_id: str, statistics: JsonDict) -> Any:
        return await self._request("PATCH", f"/trading-bots/{bot_id}/update-statistics", {"statistics": statistics})

    # --------- trades ---------

    async def create_trade_record(self, trade: JsonDict) -> Any:
        return await self._request("POST", "/bot-contract-trades", trade)
