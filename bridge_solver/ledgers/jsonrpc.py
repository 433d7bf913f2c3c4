from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from typing import Any, AsyncIterator

import aiohttp

from bridge_solver.common import log_event
from bridge_solver.common.errors import RpcMethodError, RpcTransportError


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class JsonRpcClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        name: str,
        http_url: str,
        ws_url: str = "",
        request_timeout_seconds: float = 15.0,
    ) -> None:
        self._logger = logger
        self._name = name
        self._http_url = http_url
        self._ws_url = ws_url
        self._request_timeout_seconds = request_timeout_seconds
        self._session: aiohttp.ClientSession | None = None
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        if self._session is not None and not self._session.closed:
            return
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._request_timeout_seconds),
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            raise RuntimeError(f"{self._name} RPC session is not initialized.")
        return self._session

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        session = self._require_session()
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            async with session.post(self._http_url, json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise RpcTransportError(
                        f"{self._name} RPC {method} returned HTTP {response.status}",
                        retry_after_seconds=_parse_retry_after_seconds(response.headers.get("Retry-After")),
                    )
                body = await response.json(content_type=None)
                if response.status >= 400:
                    raise RpcTransportError(
                        f"{self._name} RPC {method} failed: status={response.status} body={body}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as error:
            raise RpcTransportError(f"{self._name} RPC {method} transport error: {error}") from error

        if not isinstance(body, dict):
            raise RpcTransportError(f"Invalid {self._name} RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            if isinstance(error_payload, dict):
                raise RpcMethodError(
                    method,
                    code=error_payload.get("code"),
                    message=str(error_payload.get("message") or error_payload),
                    data=error_payload.get("data"),
                )
            raise RpcMethodError(method, code=None, message=str(error_payload))

        return body.get("result")

    async def subscribe(
        self,
        method: str,
        params: list[Any],
        *,
        idle_timeout_seconds: float,
        unsubscribe_method: str | None = None,
    ) -> AsyncIterator[Any]:
        """Yield notification payloads from a websocket subscription.

        Raises ``RpcTransportError`` when the socket closes or stays silent for
        ``idle_timeout_seconds``.
        """
        if not self._ws_url:
            raise RpcTransportError(f"{self._name} has no websocket endpoint configured.")

        session = self._require_session()
        try:
            ws = await session.ws_connect(self._ws_url, heartbeat=30.0)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise RpcTransportError(f"{self._name} websocket connect failed: {error}") from error

        subscription_id: Any = None
        try:
            request_id = next(self._ids)
            await ws.send_json({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})

            while True:
                try:
                    message = await ws.receive(timeout=idle_timeout_seconds)
                except asyncio.TimeoutError as error:
                    raise RpcTransportError(
                        f"{self._name} subscription idle for {idle_timeout_seconds:.0f}s"
                    ) from error

                if message.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    raise RpcTransportError(f"{self._name} subscription closed: {message.type.name}")
                if message.type != aiohttp.WSMsgType.TEXT:
                    continue

                try:
                    data = json.loads(message.data)
                except json.JSONDecodeError:
                    continue

                if data.get("id") == request_id:
                    if data.get("error"):
                        error_payload = data["error"]
                        raise RpcMethodError(
                            method,
                            code=error_payload.get("code") if isinstance(error_payload, dict) else None,
                            message=str(error_payload),
                        )
                    subscription_id = data.get("result")
                    log_event(
                        self._logger,
                        level="info",
                        event="subscription_started",
                        message="Ledger subscription established",
                        ledger=self._name,
                        method=method,
                    )
                    continue

                notification = data.get("params")
                if not isinstance(notification, dict):
                    continue
                if subscription_id is not None and notification.get("subscription") != subscription_id:
                    continue
                yield notification.get("result")
        finally:
            if unsubscribe_method and subscription_id is not None and not ws.closed:
                with contextlib.suppress(aiohttp.ClientError, ConnectionError, RuntimeError):
                    await ws.send_json(
                        {
                            "jsonrpc": "2.0",
                            "id": next(self._ids),
                            "method": unsubscribe_method,
                            "params": [subscription_id],
                        }
                    )
            await ws.close()
