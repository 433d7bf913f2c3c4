from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

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

from .abi import decode_hex_arguments, decode_revert_reason, encode_call, event_topic
from .jsonrpc import JsonRpcClient
from .types import OrderEvent, OrderEventPage

ORDER_CREATED_TOPIC = event_topic(
    "OrderCreated(uint256,address,uint256,uint256,uint256,uint256,uint256,bytes32)"
)
ORDER_SETTLED_TOPIC = event_topic("OrderSettled(uint256,address,uint256,bytes32)")
LOG_MESSAGE_PUBLISHED_TOPIC = event_topic("LogMessagePublished(address,uint64,uint32,bytes,uint8)")

ORDER_CREATED_DATA_TYPES = ("uint256", "uint256", "uint256", "uint256", "uint256", "bytes32")
LOG_MESSAGE_DATA_TYPES = ("uint64", "uint32", "bytes", "uint8")


@dataclass(slots=True, frozen=True)
class EvmLedgerConfig:
    rpc_url: str
    ws_url: str
    vault_address: str
    solver_address: str
    wormhole_address: str
    wormhole_chain_id: int
    start_block: int
    log_block_range: int
    confirmations: int
    gas_reserve_wei: int
    confirm_poll_interval_seconds: float
    request_timeout_seconds: float


def parse_order_created_log(log: dict[str, Any]) -> Order:
    topics = log.get("topics") or []
    if len(topics) < 3 or str(topics[0]).lower() != ORDER_CREATED_TOPIC:
        raise ValueError(f"Log is not an OrderCreated event: {log.get('transactionHash')}")

    input_amount, start_price, floor_price, start_time, duration, recipient = decode_hex_arguments(
        ORDER_CREATED_DATA_TYPES,
        str(log.get("data") or "0x"),
    )
    return Order(
        order_id=normalize_hex(str(topics[1])),
        depositor="0x" + hex_to_bytes(str(topics[2]))[-20:].hex(),
        recipient=normalize_hex(recipient),
        input_amount=input_amount,
        start_price=start_price,
        floor_price=floor_price,
        start_time=start_time,
        duration=duration,
        source_position=to_int(log.get("blockNumber")),
        source_tx=str(log.get("transactionHash") or ""),
    )


class EvmLedger:
    """EVM intent vault adapter over plain JSON-RPC.

    Writes go through ``eth_sendTransaction`` from ``solver_address``; key
    custody belongs to the signer behind the RPC endpoint.
    """

    name = "evm"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        config: EvmLedgerConfig,
        rpc: JsonRpcClient | None = None,
    ) -> None:
        self._logger = logger
        self._config = config
        self._rpc = rpc or JsonRpcClient(
            logger=logger,
            name="evm",
            http_url=config.rpc_url,
            ws_url=config.ws_url,
            request_timeout_seconds=config.request_timeout_seconds,
        )
        self.emitter_chain = config.wormhole_chain_id

    async def connect(self) -> None:
        await self._rpc.connect()
        await self.healthcheck()

    async def close(self) -> None:
        await self._rpc.close()

    async def healthcheck(self) -> None:
        await self._rpc.call("eth_chainId")

    async def _block_number(self) -> int:
        return to_int(await self._rpc.call("eth_blockNumber"))

    async def _eth_call(self, *, to: str, data: str, value: int = 0) -> str:
        call: dict[str, Any] = {"from": self._config.solver_address, "to": to, "data": data}
        if value:
            call["value"] = hex(value)
        result = await self._rpc.call("eth_call", [call, "latest"])
        return str(result or "0x")

    # source ledger role

    async def fetch_order_events(self, *, cursor: str | None, limit: int) -> OrderEventPage:
        from_block = to_int(cursor) + 1 if cursor else self._config.start_block
        safe_head = await self._block_number() - self._config.confirmations
        if from_block > safe_head:
            return OrderEventPage(events=[], next_cursor=cursor)

        to_block = min(safe_head, from_block + self._config.log_block_range - 1)
        logs = await self._rpc.call(
            "eth_getLogs",
            [
                {
                    "address": self._config.vault_address,
                    "topics": [ORDER_CREATED_TOPIC],
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )

        events: list[OrderEvent] = []
        for log in logs or []:
            try:
                order = parse_order_created_log(log)
            except ValueError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="order_log_skipped",
                    message="Skipping malformed OrderCreated log",
                    tx_hash=log.get("transactionHash"),
                    error=str(error),
                )
                continue
            events.append(OrderEvent(order=order, cursor=str(max(from_block - 1, order.source_position - 1))))

        # the block range bounds the page; limit only applies to cursor-paged ledgers
        return OrderEventPage(events=events, next_cursor=str(to_block), has_more=to_block < safe_head)

    async def subscribe_order_events(self, *, idle_timeout_seconds: float) -> AsyncIterator[OrderEvent]:
        params = [
            "logs",
            {"address": self._config.vault_address, "topics": [ORDER_CREATED_TOPIC]},
        ]
        async for log in self._rpc.subscribe(
            "eth_subscribe",
            params,
            idle_timeout_seconds=idle_timeout_seconds,
            unsubscribe_method="eth_unsubscribe",
        ):
            if not isinstance(log, dict) or log.get("removed"):
                continue
            order = parse_order_created_log(log)
            # other logs of the same block may still be in flight
            yield OrderEvent(order=order, cursor=str(max(0, order.source_position - 1)))

    async def _is_settled(self, order_id: str, *, from_block: int) -> bool:
        head = await self._block_number()
        start = max(self._config.start_block, from_block)
        while start <= head:
            end = min(head, start + self._config.log_block_range - 1)
            logs = await self._rpc.call(
                "eth_getLogs",
                [
                    {
                        "address": self._config.vault_address,
                        "topics": [ORDER_SETTLED_TOPIC, normalize_hex(order_id)],
                        "fromBlock": hex(start),
                        "toBlock": hex(end),
                    }
                ],
            )
            if logs:
                return True
            start = end + 1
        return False

    async def is_order_open(self, order_id: str, *, from_block: int = 0) -> bool:
        return not await self._is_settled(order_id, from_block=from_block)

    async def open_order_ids(self, orders: list[Order]) -> set[str]:
        # settlement cannot precede creation
        results = await asyncio.gather(
            *(self.is_order_open(order.order_id, from_block=order.source_position) for order in orders)
        )
        return {order.order_id for order, is_open in zip(orders, results) if is_open}

    async def current_required_amount(self, order_id: str) -> int | None:
        data = encode_call("getCurrentRequiredAmount(uint256)", ["uint256"], [to_int(order_id)])
        result = await self._eth_call(to=self._config.vault_address, data=data)
        (amount,) = decode_hex_arguments(["uint256"], result)
        return amount

    def solver_identity(self) -> bytes:
        return hex_to_bytes(self._config.solver_address)

    async def settle(self, *, order: Order, vaa: bytes, timeout_seconds: float) -> str:
        data = encode_call("settleOrder(bytes)", ["bytes"], [vaa])
        tx_hash = await self._send_transaction(to=self._config.vault_address, data=data, value=0)
        log_event(
            self._logger,
            level="info",
            event="settlement_submitted",
            message="Settlement transaction submitted",
            ledger=self.name,
            order_id=order.order_id,
            tx_hash=tx_hash,
        )
        await self.wait_for_confirmation(tx_hash, timeout_seconds=timeout_seconds)
        return tx_hash

    # destination ledger role

    async def native_balance(self) -> int:
        return to_int(await self._rpc.call("eth_getBalance", [self._config.solver_address, "latest"]))

    async def message_fee(self) -> int:
        if not self._config.wormhole_address:
            return 0
        result = await self._eth_call(to=self._config.wormhole_address, data=encode_call("messageFee()", [], []))
        (fee,) = decode_hex_arguments(["uint256"], result)
        return fee

    async def fulfillment_overhead(self) -> int:
        return await self.message_fee() + self._config.gas_reserve_wei

    async def submit_fulfillment(self, *, order: Order, amount: int, solver_identity: bytes) -> str:
        fee = await self.message_fee()
        data = encode_call(
            "fulfillOrder(bytes32,address,bytes32,uint256)",
            ["bytes32", "address", "bytes32", "uint256"],
            [order.order_id, order.recipient, solver_identity.rjust(32, b"\x00"), amount],
        )
        return await self._send_transaction(to=self._config.vault_address, data=data, value=amount + fee)

    async def _send_transaction(self, *, to: str, data: str, value: int) -> str:
        # a failing eth_call surfaces the revert reason before any gas is spent
        try:
            await self._eth_call(to=to, data=data, value=value)
        except RpcMethodError as error:
            reason = decode_revert_reason(error.data)
            if reason:
                raise TerminalRejectionError(reason) from error
            raise classify_rpc_error(error) from error

        transaction: dict[str, Any] = {"from": self._config.solver_address, "to": to, "data": data}
        if value:
            transaction["value"] = hex(value)
        try:
            tx_hash = await self._rpc.call("eth_sendTransaction", [transaction])
        except RpcMethodError as error:
            raise classify_rpc_error(error) from error
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise TransientError(f"eth_sendTransaction returned unexpected result: {tx_hash}")
        return tx_hash

    async def _receipt(self, tx_hash: str) -> dict[str, Any] | None:
        receipt = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
        return receipt if isinstance(receipt, dict) else None

    async def transaction_status(self, tx_hash: str) -> bool | None:
        receipt = await self._receipt(tx_hash)
        if receipt is None:
            return None
        return to_int(receipt.get("status")) == 1

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
                    event="receipt_poll_failed",
                    message="Receipt poll failed, retrying",
                    tx_hash=tx_hash,
                    error=str(error),
                )
                status = None

            if status is True:
                return
            if status is False:
                raise TerminalRejectionError("transaction reverted", tx_hash=tx_hash)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransactionPendingConfirmationError(
                    f"Transaction {tx_hash} not confirmed within {timeout_seconds:.0f}s",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(min(self._config.confirm_poll_interval_seconds, remaining))

    async def parse_emitted_message(self, tx_hash: str) -> AttestationHandle | None:
        receipt = await self._receipt(tx_hash)
        if receipt is None:
            return None

        wormhole_address = self._config.wormhole_address.lower()
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if not topics or str(topics[0]).lower() != LOG_MESSAGE_PUBLISHED_TOPIC:
                continue
            if wormhole_address and str(log.get("address", "")).lower() != wormhole_address:
                continue
            if len(topics) < 2:
                raise MessageParseError(f"LogMessagePublished in {tx_hash} has no sender topic")
            sequence, _nonce, _payload, _consistency = decode_hex_arguments(
                LOG_MESSAGE_DATA_TYPES,
                str(log.get("data") or "0x"),
            )
            return AttestationHandle(
                emitter_chain=self.emitter_chain,
                emitter_address=normalize_hex(str(topics[1])),
                sequence=sequence,
            )
        raise MessageParseError(f"No LogMessagePublished event in receipt {tx_hash}")
