"""Deriv WebSocket transport using asyncio + websockets.

Features:
- Optional authorisation at connect time, plus explicit ``authorize(token)``
  so each bot can trade with its own account token
- Heartbeat (ping) task
- Reconnection with exponential backoff + jitter
- MessageRouter: correlate req_id -> response Future
- Streams (balance, proposal_open_contract, ...) re-activated after reconnect
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from strategybot.infrastructure.logging.logging import get_logger
from strategybot.models.errors import StrategyBotError

JsonDict = Dict[str, Any]
StreamHandler = Callable[[JsonDict], Awaitable[None]]


class DerivWSError(StrategyBotError):
    """Transport failure: socket closed, request timeout, not connected."""


class DerivAPIError(StrategyBotError):
    """The API answered with an ``error`` object."""

    def __init__(self, msg_type: str, error: JsonDict) -> None:
        self.msg_type = msg_type
        self.code = str(error.get("code") or "")
        self.details = error
        super().__init__(f"{msg_type}: {error.get('message') or self.code or 'unknown error'}")


@dataclass(frozen=True)
class Stream:
    name: str
    request: JsonDict
    on_message: StreamHandler


class MessageRouter:
    def __init__(self) -> None:
        self._futures: Dict[int, asyncio.Future[JsonDict]] = {}

    def register(self, req_id: int) -> asyncio.Future[JsonDict]:
        fut: asyncio.Future[JsonDict] = asyncio.get_running_loop().create_future()
        self._futures[req_id] = fut
        return fut

    def discard(self, req_id: int) -> None:
        self._futures.pop(req_id, None)

    def resolve(self, req_id: int, msg: JsonDict) -> bool:
        fut = self._futures.pop(req_id, None)
        if fut is None:
            return False
        if not fut.done():
            fut.set_result(msg)
        return True

    def reject_all(self, exc: BaseException) -> None:
        for fut in self._futures.values():
            if not fut.done():
                fut.set_exception(exc)
        self._futures.clear()


class DerivWSClient:
    def __init__(
        self,
        websocket_url: str,
        app_id: str,
        api_token: Optional[str] = None,
        *,
        heartbeat_interval_sec: float = 15.0,
        request_timeout_sec: float = 10.0,
        max_reconnect_backoff_sec: float = 60.0,
    ) -> None:
        self._logger = get_logger("deriv_ws")
        self._url = f"{websocket_url}?app_id={app_id}"
        self._token = api_token or None
        self._heartbeat_interval = heartbeat_interval_sec
        self._request_timeout = request_timeout_sec
        self._max_backoff = max_reconnect_backoff_sec

        self._ws: Optional[Any] = None
        self._router = MessageRouter()
        self._connected_evt = asyncio.Event()
        self._stop_evt = asyncio.Event()

        self._runner_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

        self._req_id = 10_000
        self._streams: Dict[str, Stream] = {}
        self._stream_ids: Dict[str, str] = {}
        self.authorized_as: Optional[JsonDict] = None

    @property
    def is_connected(self) -> bool:
        return self._connected_evt.is_set()

    @property
    def token(self) -> Optional[str]:
        return self._token

    async def start(self) -> None:
        self._stop_evt.clear()
        self._runner_task = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        self._stop_evt.set()
        if self._runner_task:
            self._runner_task.cancel()
            try:
                await self._runner_task
            except asyncio.CancelledError:
                pass
            self._runner_task = None
        await self._disconnect()

    async def wait_until_connected(self, timeout: float = 30.0) -> None:
        try:
            await asyncio.wait_for(self._connected_evt.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DerivWSError("Not connected") from e

    async def _run_forever(self) -> None:
        backoff = 1.0
        while not self._stop_evt.is_set():
            try:
                await self._connect_and_run()
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("ws_loop_error", error=str(e))

            if self._stop_evt.is_set():
                break

            sleep_for = min(self._max_backoff, backoff + random.random() * 0.3 * backoff)
            self._logger.warning("reconnect_backoff", seconds=round(sleep_for, 2))
            await asyncio.sleep(sleep_for)
            backoff = min(self._max_backoff, backoff * 2)

    async def _connect_and_run(self) -> None:
        self._logger.info("ws_connect", url=self._url)

        async with websockets.connect(self._url, ping_interval=None, close_timeout=5, max_queue=256) as ws:
            self._ws = ws
            self._connected_evt.clear()
            # reader must run before authorize so the reply can be routed
            reader = asyncio.create_task(self._reader_loop())
            try:
                if self._token:
                    await self._authorize_raw(self._token)
                self._connected_evt.set()
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
                await self._reactivate_streams()

                done, pending = await asyncio.wait(
                    [reader, self._heartbeat_task], return_when=asyncio.FIRST_COMPLETED
                )
                for t in pending:
                    t.cancel()
                for t in done:
                    exc = t.exception()
                    if exc:
                        raise exc
            finally:
                self._connected_evt.clear()
                self._router.reject_all(DerivWSError("Disconnected"))
                reader.cancel()
                self._ws = None

    async def _disconnect(self) -> None:
        self._connected_evt.clear()
        self._router.reject_all(DerivWSError("Disconnected"))
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except ConnectionClosed:
                pass
            self._ws = None

    def _next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    async def _raw_request(self, payload: JsonDict, *, timeout: Optional[float] = None) -> JsonDict:
        if self._ws is None:
            raise DerivWSError("WebSocket not open")

        req_id = self._next_req_id()
        payload = dict(payload)
        payload["req_id"] = req_id

        fut = self._router.register(req_id)
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(fut, timeout=timeout or self._request_timeout)
        except asyncio.TimeoutError as e:
            raise DerivWSError(f"Request timeout req_id={req_id}") from e
        except ConnectionClosed as e:
            raise DerivWSError("Connection closed during request") from e
        finally:
            self._router.discard(req_id)

    async def _authorize_raw(self, token: str) -> JsonDict:
        resp = await self._raw_request({"authorize": token})
        if resp.get("error"):
            raise DerivAPIError("authorize", resp["error"])
        self.authorized_as = resp.get("authorize") or {}
        self._logger.info("ws_authorized", loginid=self.authorized_as.get("loginid"))
        return self.authorized_as

    async def authorize(self, token: str) -> JsonDict:
        """Switch the connection to ``token``; remembered for reconnects."""
        await self.wait_until_connected()
        info = await self._authorize_raw(token)
        self._token = token
        return info

    async def request(self, payload: JsonDict, *, timeout: Optional[float] = None) -> JsonDict:
        """Send a request and return the reply; API errors are raised as DerivAPIError."""
        await self.wait_until_connected()
        resp = await self._raw_request(payload, timeout=timeout)
        if resp.get("error"):
            raise DerivAPIError(str(resp.get("msg_type") or next(iter(payload), "request")), resp["error"])
        return resp

    async def subscribe(self, name: str, request: JsonDict, on_message: StreamHandler) -> Optional[JsonDict]:
        """Register a stream; returns the first reply when already connected."""
        self._streams[name] = Stream(name=name, request=dict(request, subscribe=1), on_message=on_message)
        if self.is_connected:
            return await self._activate(name)
        return None

    async def unsubscribe(self, name: str) -> None:
        self._streams.pop(name, None)
        stream_id = self._stream_ids.pop(name, None)
        if stream_id and self.is_connected:
            await self.request({"forget": stream_id})

    async def _activate(self, name: str) -> JsonDict:
        stream = self._streams[name]
        resp = await self.request(stream.request)
        stream_id = (resp.get("subscription") or {}).get("id")
        if stream_id:
            self._stream_ids[name] = stream_id
        self._logger.info("subscribed", name=name, stream_id=stream_id)
        return resp

    async def _reactivate_streams(self) -> None:
        self._stream_ids.clear()
        for name in list(self._streams):
            try:
                await self._activate(name)
            except DerivAPIError as e:
                self._logger.error("resubscribe_failed", name=name, error=str(e))

    async def _dispatch(self, msg: JsonDict) -> None:
        stream_id = (msg.get("subscription") or {}).get("id")
        if not stream_id:
            return
        for name, sid in list(self._stream_ids.items()):
            if sid == stream_id and name in self._streams:
                await self._streams[name].on_message(msg)
                return

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                msg = json.loads(raw)
                req_id = msg.get("req_id")
                # stream updates reuse the req_id of the original request
                if isinstance(req_id, int) and self._router.resolve(req_id, msg):
                    continue
                await self._dispatch(msg)
        except ConnectionClosed:
            return

    async def _heartbeat_loop(self) -> None:
        assert self._ws is not None
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                pong_waiter = await self._ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=5.0)
                self._logger.debug("ws_ping_ok")
            except (asyncio.TimeoutError, ConnectionClosed) as e:
                self._logger.warning("ws_ping_failed", error=str(e))
                raise
