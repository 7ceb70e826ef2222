from __future__ import annotations

import asyncio

import pytest
from aiohttp import test_utils, web

from strategybot.infrastructure.api.bot_api_client import BotApiClient
from strategybot.models.errors import PersistenceError


def _app(seen: list) -> web.Application:
    async def get_bot(request: web.Request) -> web.Response:
        seen.append(("GET", request.path, request.headers.get("Authorization")))
        if request.match_info["bot_id"] == "missing":
            return web.json_response({"message": "Bot not found"}, status=404)
        return web.json_response({"data": {"botId": request.match_info["bot_id"], "botName": "remote"}})

    async def status(request: web.Request) -> web.Response:
        seen.append(("POST", request.path, None))
        return web.json_response({"ok": True})

    async def statistics(request: web.Request) -> web.Response:
        body = await request.json()
        seen.append(("PATCH", request.path, body))
        return web.json_response({"data": body})

    app = web.Application()
    app.router.add_get("/api/trading-bots/{bot_id}", get_bot)
    app.router.add_post("/api/trading-bots/{bot_id}/{action}", status)
    app.router.add_patch("/api/trading-bots/{bot_id}/update-statistics", statistics)
    return app


def test_requests_unwrap_data_and_send_auth():
    seen: list = []

    async def scenario():
        async with test_utils.TestServer(_app(seen)) as server:
            client = BotApiClient(str(server.make_url("/api")), auth_token="jwt-abc")
            try:
                bot = await client.get_bot("b-1")
                await client.update_status("b-1", "START")
                stats = await client.update_statistics("b-1", {"lifetimeRuns": 3})
            finally:
                await client.close()
        return bot, stats

    bot, stats = asyncio.run(scenario())

    assert bot == {"botId": "b-1", "botName": "remote"}
    assert stats == {"statistics": {"lifetimeRuns": 3}}
    assert seen[0] == ("GET", "/api/trading-bots/b-1", "Bearer jwt-abc")
    assert seen[1][1] == "/api/trading-bots/b-1/start"


def test_http_errors_become_persistence_errors():
    async def scenario():
        async with test_utils.TestServer(_app([])) as server:
            client = BotApiClient(str(server.make_url("/api")))
            try:
                await client.get_bot("missing")
            finally:
                await client.close()

    with pytest.raises(PersistenceError) as exc:
        asyncio.run(scenario())
    assert exc.value.status_code == 404
    assert "Bot not found" in str(exc.value)


def test_network_errors_become_persistence_errors():
    async def scenario():
        client = BotApiClient("http://127.0.0.1:9/api", timeout_sec=1.0)
        try:
            await client.get_bot("b-1")
        finally:
            await client.close()

    with pytest.raises(PersistenceError):
        asyncio.run(scenario())
