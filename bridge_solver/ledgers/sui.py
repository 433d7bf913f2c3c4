from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from solders.keypair import Keypair

from bridge_solver.common import log_event
from bridge_solver.common.errors import (
    MessageParseError,
    RpcMethodError,
    TerminalRejectionError,
    TransactionPendingConfirmationError,
    TransientError,
    classify_rpc_error,
)
from bridge_solver.orders.types import AttestationHandle, Order, hex_to_bytes, normalize_hex, to_int

from .jsonrpc import JsonRpcClient
from .types import OrderEvent, OrderEventPage

SUI_COIN_TYPE = "0x2::sui::SUI"
CLOCK_OBJECT_ID = "0x6"
ED25519_FLAG = 0x00
TRANSACTION_INTENT = bytes([0, 0, 0])
MULTI_GET_CHUNK = 50


def _blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class SuiSigner:
    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair
        self.public_key = bytes(keypair.pubkey())
        self.address = "0x" + _blake2b256(bytes([ED25519_FLAG]) + self.public_key).hex()

    @classmethod
    def from_private_key(cls, raw: str) -> "SuiSigner":
        value = raw.strip()
        if not value:
            raise ValueError("Sui private key is empty.")
        if value.startswith("suiprivkey"):
            raise ValueError("Bech32 suiprivkey keys are not supported; export the key as base64.")

        if value.startswith("["):
            seed = bytes(json.loads(value))
        elif value.lower().startswith("0x"):
            seed = bytes.fromhex(value[2:])
        else:
            seed = base64.b64decode(value)

        if len(seed) == 33 and seed[0] == ED25519_FLAG:
            seed = seed[1:]
        elif len(seed) == 64:
            seed = seed[:32]
        if len(seed) != 32:
            raise ValueError(f"Unsupported Sui private key length: {len(seed)} bytes.")
        return cls(Keypair.from_seed(seed))

    def sign_transaction(self, tx_bytes_b64: str) -> str:
        tx_bytes = base64.b64decode(tx_bytes_b64)
        digest = _blake2b256(TRANSACTION_INTENT + tx_bytes)
        signature = bytes(self._keypair.sign_message(digest))
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode("ascii")


@dataclass(slots=True, frozen=True)
class SuiLedgerConfig:
    rpc_url: str
    ws_url: str
    package_id: str
    solver_state_id: str
    solver_config_id: str
    wormhole_state_id: str
    emitter_address: str
    wormhole_chain_id: int
    gas_budget: int
    page_limit: int
    confirm_poll_interval_seconds: float
    request_timeout_seconds: float

    @property
    def intent_event_type(self) -> str:
        return f"{self.package_id}::intent::IntentCreated"


def _bytes_field(value: Any) -> bytes:
    if isinstance(value, list):
        return bytes(int(item) for item in value)
    if isinstance(value, str):
        if value.lower().startswith("0x"):
            return hex_to_bytes(value)
        return base64.b64decode(value)
    raise ValueError(f"Unsupported byte vector encoding: {value!r}")


def parse_intent_created_event(event: dict[str, Any]) -> Order:
    fields = event.get("parsedJson")
    if not isinstance(fields, dict) or "intent_id" not in fields:
        raise ValueError("IntentCreated event has no parsed fields")

    recipient = _bytes_field(fields.get("recipient_evm"))
    if len(recipient) != 20:
        raise ValueError(f"IntentCreated recipient is {len(recipient)} bytes, expected 20")

    return Order(
        order_id=normalize_hex(str(fields["intent_id"])),
        depositor=str(fields.get("creator") or ""),
        recipient="0x" + recipient.hex(),
        input_amount=to_int(fields.get("sui_amount")),
        start_price=to_int(fields.get("start_output_amount")),
        floor_price=to_int(fields.get("min_output_amount")),
        start_time=to_int(fields.get("start_time")),
        duration=to_int(fields.get("duration")),
        source_position=to_int(event.get("timestampMs")),
        source_tx=str((event.get("id") or {}).get("txDigest") or ""),
    )


def _encode_cursor(event_id: Any) -> str | None:
    if not isinstance(event_id, dict):
        return None
    return json.dumps(event_id, sort_keys=True, separators=(",", ":"))


def _decode_cursor(cursor: str | None) -> dict[str, Any] | None:
    if not cursor:
        return None
    decoded = json.loads(cursor)
    return decoded if isinstance(decoded, dict) else None


class SuiLedger:
    name = "sui"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        config: SuiLedgerConfig,
        signer: SuiSigner,
        rpc: JsonRpcClient | None = None,
    ) -> None:
        self._logger = logger
        self._config = config
        self._signer = signer
        self._rpc = rpc or JsonRpcClient(
            logger=logger,
            name="sui",
            http_url=config.rpc_url,
            ws_url=config.ws_url,
            request_timeout_seconds=config.request_timeout_seconds,
        )
        self.emitter_chain = config.wormhole_chain_id

    @property
    def address(self) -> str:
        return self._signer.address

    async def connect(self) -> None:
        await self._rpc.connect()
        await self.healthcheck()

    async def close(self) -> None:
        await self._rpc.close()

    async def healthcheck(self) -> None:
        await self._rpc.call("sui_getLatestCheckpointSequenceNumber")

    # source ledger role

    async def fetch_order_events(self, *, cursor: str | None, limit: int) -> OrderEventPage:
        page_limit = max(1, min(limit or self._config.page_limit, self._config.page_limit))
        result = await self._rpc.call(
            "suix_queryEvents",
            [{"MoveEventType": self._config.intent_event_type}, _decode_cursor(cursor), page_limit, False],
        )
        result = result or {}

        events: list[OrderEvent] = []
        for event in result.get("data") or []:
            try:
                order = parse_intent_created_event(event)
            except (KeyError, ValueError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="order_event_skipped",
                    message="Skipping malformed IntentCreated event",
                    event_id=event.get("id"),
                    error=str(error),
                )
                continue
            events.append(OrderEvent(order=order, cursor=_encode_cursor(event.get("id"))))

        next_cursor = _encode_cursor(result.get("nextCursor")) or cursor
        return OrderEventPage(events=events, next_cursor=next_cursor, has_more=bool(result.get("hasNextPage")))

    async def subscribe_order_events(self, *, idle_timeout_seconds: float) -> AsyncIterator[OrderEvent]:
        async for event in self._rpc.subscribe(
            "suix_subscribeEvent",
            [{"MoveEventType": self._config.intent_event_type}],
            idle_timeout_seconds=idle_timeout_seconds,
            unsubscribe_method="suix_unsubscribeEvent",
        ):
            if not isinstance(event, dict):
                continue
            yield OrderEvent(order=parse_intent_created_event(event), cursor=_encode_cursor(event.get("id")))

    async def open_order_ids(self, orders: list[Order]) -> set[str]:
        """Intent objects are deleted on claim, so an existing object is still pending."""
        order_ids = [order.order_id for order in orders]
        open_ids: set[str] = set()
        for start in range(0, len(order_ids), MULTI_GET_CHUNK):
            chunk = order_ids[start : start + MULTI_GET_CHUNK]
            results = await self._rpc.call("sui_multiGetObjects", [chunk, {"showType": True}])
            for order_id, entry in zip(chunk, results or []):
                if isinstance(entry, dict) and entry.get("data"):
                    open_ids.add(order_id)
        return open_ids

    async def current_required_amount(self, order_id: str) -> int | None:
        # the intent module has no price view
        return None

    def solver_identity(self) -> bytes:
        return hex_to_bytes(self._signer.address)

    async def settle(self, *, order: Order, vaa: bytes, timeout_seconds: float) -> str:
        tx_bytes = await self._move_call(
            function="intent::claim_intent",
            arguments=[
                order.order_id,
                self._config.solver_config_id,
                self._config.wormhole_state_id,
                CLOCK_OBJECT_ID,
                list(vaa),
            ],
        )
        result = await asyncio.wait_for(self._execute(tx_bytes, action="claim_intent"), timeout=timeout_seconds)
        return str(result["digest"])

    # destination ledger role

    async def native_balance(self) -> int:
        result = await self._rpc.call("suix_getBalance", [self._signer.address, SUI_COIN_TYPE])
        return to_int((result or {}).get("totalBalance"))

    async def fulfillment_overhead(self) -> int:
        # one split transaction plus the fill itself
        return 2 * self._config.gas_budget

    async def submit_fulfillment(self, *, order: Order, amount: int, solver_identity: bytes) -> str:
        payment_coin, fee_coin = await self._split_payment_coins(amount)
        tx_bytes = await self._move_call(
            function="solver_engine::solve_and_prove",
            arguments=[
                self._config.solver_state_id,
                self._config.wormhole_state_id,
                [payment_coin],
                fee_coin,
                order.recipient,
                list(hex_to_bytes(order.order_id)),
                str(amount),
                list(solver_identity),
                CLOCK_OBJECT_ID,
            ],
        )
        result = await self._execute(tx_bytes, action="solve_and_prove")
        return str(result["digest"])

    async def _split_payment_coins(self, amount: int) -> tuple[str, str]:
        coins = await self._rpc.call("suix_getCoins", [self._signer.address, SUI_COIN_TYPE, None, 50])
        coin_ids = [str(coin["coinObjectId"]) for coin in (coins or {}).get("data") or []]
        if not coin_ids:
            raise TransientError("No SUI coins available for payment")

        try:
            split = await self._rpc.call(
                "unsafe_paySui",
                [
                    self._signer.address,
                    coin_ids,
                    [self._signer.address, self._signer.address],
                    [str(amount), "0"],
                    str(self._config.gas_budget),
                ],
            )
        except RpcMethodError as error:
            raise classify_rpc_error(error) from error
        result = await self._execute(str(split["txBytes"]), action="split_payment")

        created = [
            str(change["objectId"])
            for change in result.get("objectChanges") or []
            if change.get("type") == "created" and SUI_COIN_TYPE in str(change.get("objectType", ""))
        ]
        objects = await self._rpc.call("sui_multiGetObjects", [created, {"showContent": True}])
        balances: dict[str, int] = {}
        for object_id, entry in zip(created, objects or []):
            fields = (((entry or {}).get("data") or {}).get("content") or {}).get("fields") or {}
            balances[object_id] = to_int(fields.get("balance"))

        payment = next((object_id for object_id, value in balances.items() if value == amount), None)
        fee = next((object_id for object_id, value in balances.items() if value == 0 and object_id != payment), None)
        if payment is None or fee is None:
            raise TransientError(f"Could not identify split coins in {result.get('digest')}")
        return payment, fee

    async def _move_call(self, *, function: str, arguments: list[Any]) -> str:
        module, function_name = function.split("::", 1)
        try:
            result = await self._rpc.call(
                "unsafe_moveCall",
                [
                    self._signer.address,
                    self._config.package_id,
                    module,
                    function_name,
                    [],
                    arguments,
                    None,
                    str(self._config.gas_budget),
                    None,
                ],
            )
        except RpcMethodError as error:
            raise classify_rpc_error(error) from error
        return str(result["txBytes"])

    async def _execute(self, tx_bytes: str, *, action: str) -> dict[str, Any]:
        signature = self._signer.sign_transaction(tx_bytes)
        try:
            result = await self._rpc.call(
                "sui_executeTransactionBlock",
                [
                    tx_bytes,
                    [signature],
                    {"showEffects": True, "showObjectChanges": True},
                    "WaitForLocalExecution",
                ],
            )
        except RpcMethodError as error:
            raise classify_rpc_error(error) from error

        digest = str(result.get("digest") or "")
        status = ((result.get("effects") or {}).get("status")) or {}
        if status.get("status") != "success":
            raise TerminalRejectionError(f"{action} failed: {status.get('error') or status}", tx_hash=digest)
        log_event(
            self._logger,
            level="info",
            event="sui_transaction_executed",
            message="Sui transaction executed",
            action=action,
            tx_hash=digest,
        )
        return result

    async def _transaction_block(self, digest: str, options: dict[str, bool]) -> dict[str, Any] | None:
        try:
            result = await self._rpc.call("sui_getTransactionBlock", [digest, options])
        except RpcMethodError:
            # unknown digests are reported as method errors until indexed
            return None
        return result if isinstance(result, dict) else None

    async def transaction_status(self, tx_hash: str) -> bool | None:
        block = await self._transaction_block(tx_hash, {"showEffects": True})
        if block is None:
            return None
        status = ((block.get("effects") or {}).get("status")) or {}
        return status.get("status") == "success"

    async def wait_for_confirmation(self, tx_hash: str, *, timeout_seconds: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            try:
                status = await self.transaction_status(tx_hash)
            except TransientError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="transaction_poll_failed",
                    message="Transaction status poll failed, retrying",
                    tx_hash=tx_hash,
                    error=str(error),
                )
                status = None
            if status is True:
                return
            if status is False:
                raise TerminalRejectionError("transaction failed", tx_hash=tx_hash)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransactionPendingConfirmationError(
                    f"Transaction {tx_hash} not confirmed within {timeout_seconds:.0f}s",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(min(self._config.confirm_poll_interval_seconds, remaining))

    async def parse_emitted_message(self, tx_hash: str) -> AttestationHandle | None:
        block = await self._transaction_block(tx_hash, {"showEvents": True})
        if block is None:
            return None

        for event in block.get("events") or []:
            if not str(event.get("type", "")).endswith("::publish_message::WormholeMessage"):
                continue
            fields = event.get("parsedJson") or {}
            emitter = self._config.emitter_address or str(fields.get("sender") or "")
            if not emitter:
                raise MessageParseError(f"WormholeMessage in {tx_hash} has no sender")
            return AttestationHandle(
                emitter_chain=self.emitter_chain,
                emitter_address=normalize_hex(emitter),
                sequence=to_int(fields.get("sequence")),
            )
        raise MessageParseError(f"No WormholeMessage event in transaction {tx_hash}")
