from __future__ import annotations

import asyncio
import base64
import binascii
import logging

import aiohttp

from bridge_solver.common.errors import RpcTransportError
from bridge_solver.orders.types import AttestationHandle


class GuardianApiClient:
    """Read-only client for the guardian ``v1/signed_vaa`` REST endpoint."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str,
        request_timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._request_timeout_seconds = request_timeout_seconds
        self._session: aiohttp.ClientSession | None = None

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

    def vaa_url(self, handle: AttestationHandle) -> str:
        emitter = handle.emitter_address.lower().removeprefix("0x").rjust(64, "0")
        return f"{self._api_base_url}/v1/signed_vaa/{handle.emitter_chain}/{emitter}/{handle.sequence}"

    async def fetch_signed_vaa(self, handle: AttestationHandle) -> bytes | None:
        """Return the VAA bytes, or None while the guardians have not signed yet."""
        if self._session is None or self._session.closed:
            raise RuntimeError("Guardian API session is not initialized.")

        try:
            async with self._session.get(self.vaa_url(handle)) as response:
                if response.status == 404:
                    return None
                if response.status >= 400:
                    raise RpcTransportError(f"Guardian API returned HTTP {response.status}")
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
            raise RpcTransportError(f"Guardian API request failed: {error}") from error

        encoded = body.get("vaaBytes") if isinstance(body, dict) else None
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded)
        except (binascii.Error, ValueError) as error:
            raise RpcTransportError(f"Guardian API returned undecodable vaaBytes: {error}") from error
