"""Typed big-endian codecs for guardian VAAs and fulfillment payloads.

Every layout is a tuple of named fixed-width fields; integers are unsigned
big-endian, byte fields are copied verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from bridge_solver.ledgers.abi import keccak256


class CodecError(ValueError):
    pass


@dataclass(slots=True, frozen=True)
class Field:
    name: str
    size: int
    kind: str = "uint"


def decode_fields(layout: Sequence[Field], data: bytes, *, offset: int = 0) -> tuple[dict[str, Any], int]:
    values: dict[str, Any] = {}
    cursor = offset
    for field in layout:
        chunk = data[cursor : cursor + field.size]
        if len(chunk) != field.size:
            raise CodecError(f"Truncated field {field.name!r}: need {field.size} bytes at offset {cursor}")
        values[field.name] = int.from_bytes(chunk, "big") if field.kind == "uint" else bytes(chunk)
        cursor += field.size
    return values, cursor


def encode_fields(layout: Sequence[Field], values: dict[str, Any]) -> bytes:
    out = bytearray()
    for field in layout:
        value = values[field.name]
        if field.kind == "uint":
            if value < 0 or value >= 1 << (8 * field.size):
                raise CodecError(f"Field {field.name!r} value {value} does not fit in {field.size} bytes")
            out += int(value).to_bytes(field.size, "big")
            continue
        raw = bytes(value)
        if len(raw) != field.size:
            raise CodecError(f"Field {field.name!r} expects {field.size} bytes, got {len(raw)}")
        out += raw
    return bytes(out)


VAA_HEADER = (
    Field("version", 1),
    Field("guardian_set_index", 4),
    Field("signature_count", 1),
)
GUARDIAN_SIGNATURE = (
    Field("guardian_index", 1),
    Field("r", 32, "bytes"),
    Field("s", 32, "bytes"),
    Field("v", 1),
)
VAA_BODY = (
    Field("timestamp", 4),
    Field("nonce", 4),
    Field("emitter_chain", 2),
    Field("emitter_address", 32, "bytes"),
    Field("sequence", 8),
    Field("consistency_level", 1),
)
FULFILLMENT_PAYLOAD = (
    Field("order_id", 32, "bytes"),
    Field("solver", 32, "bytes"),
)
FULFILLMENT_AMOUNT = (Field("amount", 32),)

SUPPORTED_VAA_VERSION = 1


@dataclass(slots=True, frozen=True)
class GuardianSignature:
    guardian_index: int
    r: bytes
    s: bytes
    v: int


@dataclass(slots=True, frozen=True)
class Vaa:
    version: int
    guardian_set_index: int
    signatures: tuple[GuardianSignature, ...]
    timestamp: int
    nonce: int
    emitter_chain: int
    emitter_address: bytes
    sequence: int
    consistency_level: int
    payload: bytes
    body: bytes

    @property
    def emitter_hex(self) -> str:
        return "0x" + self.emitter_address.hex()

    @property
    def digest(self) -> str:
        """Replay-protection hash: keccak256 of keccak256(body)."""
        return "0x" + keccak256(keccak256(self.body)).hex()


def decode_vaa(data: bytes) -> Vaa:
    header, cursor = decode_fields(VAA_HEADER, data)
    if header["version"] != SUPPORTED_VAA_VERSION:
        raise CodecError(f"Unsupported VAA version {header['version']}")

    signatures: list[GuardianSignature] = []
    for _ in range(header["signature_count"]):
        values, cursor = decode_fields(GUARDIAN_SIGNATURE, data, offset=cursor)
        signatures.append(GuardianSignature(**values))

    body = bytes(data[cursor:])
    values, payload_start = decode_fields(VAA_BODY, data, offset=cursor)
    return Vaa(
        version=header["version"],
        guardian_set_index=header["guardian_set_index"],
        signatures=tuple(signatures),
        payload=bytes(data[payload_start:]),
        body=body,
        **values,
    )


def encode_vaa(vaa: Vaa) -> bytes:
    out = bytearray(
        encode_fields(
            VAA_HEADER,
            {
                "version": vaa.version,
                "guardian_set_index": vaa.guardian_set_index,
                "signature_count": len(vaa.signatures),
            },
        )
    )
    for signature in vaa.signatures:
        out += encode_fields(
            GUARDIAN_SIGNATURE,
            {"guardian_index": signature.guardian_index, "r": signature.r, "s": signature.s, "v": signature.v},
        )
    out += encode_fields(
        VAA_BODY,
        {
            "timestamp": vaa.timestamp,
            "nonce": vaa.nonce,
            "emitter_chain": vaa.emitter_chain,
            "emitter_address": vaa.emitter_address,
            "sequence": vaa.sequence,
            "consistency_level": vaa.consistency_level,
        },
    )
    out += vaa.payload
    return bytes(out)


@dataclass(slots=True, frozen=True)
class FulfillmentPayload:
    order_id: bytes
    solver: bytes
    amount: int | None = None

    @property
    def order_id_hex(self) -> str:
        return "0x" + self.order_id.hex()


def decode_fulfillment_payload(payload: bytes) -> FulfillmentPayload:
    """Decode ``order_id | solver [| amount]``; the amount word is optional."""
    values, cursor = decode_fields(FULFILLMENT_PAYLOAD, payload)
    amount: int | None = None
    if len(payload) > cursor:
        amount_values, cursor = decode_fields(FULFILLMENT_AMOUNT, payload, offset=cursor)
        amount = amount_values["amount"]
    if len(payload) != cursor:
        raise CodecError(f"Unexpected trailing payload bytes: {len(payload) - cursor}")
    return FulfillmentPayload(order_id=values["order_id"], solver=values["solver"], amount=amount)


def encode_fulfillment_payload(payload: FulfillmentPayload) -> bytes:
    encoded = encode_fields(
        FULFILLMENT_PAYLOAD,
        {"order_id": payload.order_id, "solver": payload.solver.rjust(32, b"\x00")},
    )
    if payload.amount is not None:
        encoded += encode_fields(FULFILLMENT_AMOUNT, {"amount": payload.amount})
    return encoded
