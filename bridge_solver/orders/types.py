from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_int(value: Any, default: int = 0) -> int:
    try:
        if value is None or value == "":
            return default
        if isinstance(value, str) and value.lower().startswith("0x"):
            return int(value, 16)
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_hex(value: str | bytes | int, *, width: int = 32) -> str:
    """Canonical lower-case ``0x`` hex left-padded to ``width`` bytes."""
    if isinstance(value, int):
        raw = value.to_bytes(width, "big")
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = value.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        if len(text) % 2:
            text = "0" + text
        raw = bytes.fromhex(text)
    if len(raw) > width:
        raise ValueError(f"Value does not fit in {width} bytes: 0x{raw.hex()}")
    return "0x" + raw.rjust(width, b"\x00").hex()


def hex_to_bytes(value: str) -> bytes:
    text = value[2:] if value.lower().startswith("0x") else value
    if len(text) % 2:
        text = "0" + text
    return bytes.fromhex(text)


class LifecycleState(str, Enum):
    OPEN = "open"
    FULFILLING = "fulfilling"
    AWAITING_ATTESTATION = "awaiting_attestation"
    SETTLED = "settled"
    FAILED = "failed"
    EXPIRED = "expired"


RESUMABLE_STATES = frozenset({LifecycleState.FULFILLING, LifecycleState.AWAITING_ATTESTATION})

_ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.OPEN: frozenset(
        {
            LifecycleState.OPEN,
            LifecycleState.FULFILLING,
            LifecycleState.EXPIRED,
            LifecycleState.FAILED,
        }
    ),
    LifecycleState.FULFILLING: frozenset(
        {
            LifecycleState.OPEN,
            LifecycleState.AWAITING_ATTESTATION,
            LifecycleState.FAILED,
        }
    ),
    LifecycleState.AWAITING_ATTESTATION: frozenset(
        {
            LifecycleState.AWAITING_ATTESTATION,
            LifecycleState.SETTLED,
            LifecycleState.FAILED,
        }
    ),
    LifecycleState.FAILED: frozenset(
        {
            LifecycleState.FAILED,
            LifecycleState.AWAITING_ATTESTATION,
        }
    ),
    LifecycleState.SETTLED: frozenset(),
    LifecycleState.EXPIRED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class Order:
    order_id: str
    depositor: str
    recipient: str
    input_amount: int
    start_price: int
    floor_price: int
    start_time: int
    duration: int
    source_position: int = 0
    source_tx: str = ""

    def __post_init__(self) -> None:
        if self.duration <= 0:
            raise ValueError(f"Order {self.order_id} has non-positive duration {self.duration}.")
        if self.floor_price > self.start_price:
            raise ValueError(f"Order {self.order_id} floor price exceeds start price.")
        if self.input_amount < 0 or self.floor_price < 0:
            raise ValueError(f"Order {self.order_id} carries negative amounts.")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        # amounts can exceed 2**53; keep them as strings for JSON consumers
        for key in ("input_amount", "start_price", "floor_price"):
            payload[key] = str(payload[key])
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Order":
        return cls(
            order_id=str(payload["order_id"]),
            depositor=str(payload.get("depositor", "")),
            recipient=str(payload.get("recipient", "")),
            input_amount=to_int(payload.get("input_amount")),
            start_price=to_int(payload.get("start_price")),
            floor_price=to_int(payload.get("floor_price")),
            start_time=to_int(payload.get("start_time")),
            duration=to_int(payload.get("duration")),
            source_position=to_int(payload.get("source_position")),
            source_tx=str(payload.get("source_tx") or ""),
        )


@dataclass(slots=True, frozen=True)
class FulfillmentRecord:
    order_id: str
    tx_hash: str
    amount_paid: int
    submitted_at: str
    confirmed: bool = False
    confirmed_at: str | None = None

    def mark_confirmed(self) -> "FulfillmentRecord":
        return FulfillmentRecord(
            order_id=self.order_id,
            tx_hash=self.tx_hash,
            amount_paid=self.amount_paid,
            submitted_at=self.submitted_at,
            confirmed=True,
            confirmed_at=now_iso(),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["amount_paid"] = str(self.amount_paid)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FulfillmentRecord":
        return cls(
            order_id=str(payload["order_id"]),
            tx_hash=str(payload["tx_hash"]),
            amount_paid=to_int(payload.get("amount_paid")),
            submitted_at=str(payload.get("submitted_at") or ""),
            confirmed=bool(payload.get("confirmed", False)),
            confirmed_at=payload.get("confirmed_at") or None,
        )


@dataclass(slots=True, frozen=True)
class AttestationHandle:
    emitter_chain: int
    emitter_address: str
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AttestationHandle":
        return cls(
            emitter_chain=to_int(payload.get("emitter_chain")),
            emitter_address=normalize_hex(str(payload["emitter_address"])),
            sequence=to_int(payload.get("sequence")),
        )


class InvalidTransitionError(ValueError):
    pass


@dataclass(slots=True)
class OrderRecord:
    """Local cache entry for one order, written only by the order's pipeline."""

    order: Order
    state: LifecycleState = LifecycleState.OPEN
    transitions: dict[str, str] = field(default_factory=dict)
    retries: dict[str, int] = field(default_factory=dict)
    accepted_amount: int | None = None
    fulfillment: FulfillmentRecord | None = None
    handle: AttestationHandle | None = None
    settlement_tx: str | None = None
    failure_reason: str = ""
    updated_at: str = ""

    @property
    def order_id(self) -> str:
        return self.order.order_id

    @property
    def has_confirmed_fulfillment(self) -> bool:
        return self.fulfillment is not None and self.fulfillment.confirmed

    @property
    def holds_unsettled_payment(self) -> bool:
        """A payment went out and the collateral has not been claimed yet."""
        return self.fulfillment is not None and self.state is not LifecycleState.SETTLED

    def transition(self, state: LifecycleState, *, reason: str = "") -> None:
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Order {self.order_id}: transition {self.state.value} -> {state.value} is not allowed."
            )
        if state is LifecycleState.AWAITING_ATTESTATION and not self.has_confirmed_fulfillment:
            raise InvalidTransitionError(
                f"Order {self.order_id}: cannot await attestation without a confirmed fulfillment."
            )
        if state is LifecycleState.SETTLED and (not self.has_confirmed_fulfillment or self.handle is None):
            raise InvalidTransitionError(
                f"Order {self.order_id}: cannot settle before fulfillment is confirmed and attested."
            )
        if state is LifecycleState.OPEN and self.fulfillment is not None:
            raise InvalidTransitionError(
                f"Order {self.order_id}: a submitted fulfillment cannot return to open."
            )

        self.state = state
        self.failure_reason = reason if state in (LifecycleState.FAILED, LifecycleState.EXPIRED) else ""
        self.updated_at = now_iso()
        self.transitions[state.value] = self.updated_at

    def bump_retry(self, stage: str) -> int:
        count = self.retries.get(stage, 0) + 1
        self.retries[stage] = count
        return count

    def to_mapping(self) -> dict[str, str]:
        mapping = {
            "order_id": self.order_id,
            "status": self.state.value,
            "order": json.dumps(self.order.to_dict(), separators=(",", ":")),
            "transitions": json.dumps(self.transitions, separators=(",", ":")),
            "retries": json.dumps(self.retries, separators=(",", ":")),
            "failure_reason": self.failure_reason,
            "updated_at": self.updated_at or now_iso(),
        }
        if self.accepted_amount is not None:
            mapping["accepted_amount"] = str(self.accepted_amount)
        if self.fulfillment is not None:
            mapping["fulfillment"] = json.dumps(self.fulfillment.to_dict(), separators=(",", ":"))
        if self.handle is not None:
            mapping["handle"] = json.dumps(self.handle.to_dict(), separators=(",", ":"))
        if self.settlement_tx:
            mapping["settlement_tx"] = self.settlement_tx
        return mapping

    @classmethod
    def from_mapping(cls, mapping: dict[str, str]) -> "OrderRecord":
        fulfillment_raw = mapping.get("fulfillment")
        handle_raw = mapping.get("handle")
        accepted_raw = mapping.get("accepted_amount")
        return cls(
            order=Order.from_dict(json.loads(mapping["order"])),
            state=LifecycleState(mapping.get("status") or LifecycleState.OPEN.value),
            transitions=dict(json.loads(mapping.get("transitions") or "{}")),
            retries={key: int(value) for key, value in json.loads(mapping.get("retries") or "{}").items()},
            accepted_amount=to_int(accepted_raw) if accepted_raw else None,
            fulfillment=FulfillmentRecord.from_dict(json.loads(fulfillment_raw)) if fulfillment_raw else None,
            handle=AttestationHandle.from_dict(json.loads(handle_raw)) if handle_raw else None,
            settlement_tx=mapping.get("settlement_tx") or None,
            failure_reason=mapping.get("failure_reason", ""),
            updated_at=mapping.get("updated_at", ""),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "state": self.state.value,
            "accepted_amount": str(self.accepted_amount) if self.accepted_amount is not None else None,
            "fulfillment_tx": self.fulfillment.tx_hash if self.fulfillment else None,
            "settlement_tx": self.settlement_tx,
            "failure_reason": self.failure_reason,
            "retries": dict(self.retries),
        }
