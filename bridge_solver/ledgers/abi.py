from __future__ import annotations

from typing import Any, Sequence

from Crypto.Hash import keccak

WORD = 32
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

_STATIC_TYPES = {"uint256", "uint64", "uint32", "uint16", "uint8", "address", "bytes32", "bool"}


def keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(data)
    return digest.digest()


def function_selector(signature: str) -> bytes:
    return keccak256(signature.encode("ascii"))[:4]


def event_topic(signature: str) -> str:
    return "0x" + keccak256(signature.encode("ascii")).hex()


def strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def _encode_static(abi_type: str, value: Any) -> bytes:
    if abi_type.startswith("uint"):
        number = int(value)
        if number < 0:
            raise ValueError(f"{abi_type} cannot encode negative value {number}")
        return number.to_bytes(WORD, "big")
    if abi_type == "bool":
        return (1 if value else 0).to_bytes(WORD, "big")
    if abi_type == "address":
        raw = bytes.fromhex(strip_0x(value)) if isinstance(value, str) else bytes(value)
        if len(raw) > 20:
            raw = raw[-20:]
        return raw.rjust(WORD, b"\x00")
    if abi_type == "bytes32":
        raw = bytes.fromhex(strip_0x(value)) if isinstance(value, str) else bytes(value)
        if len(raw) > WORD:
            raise ValueError("bytes32 value is longer than 32 bytes")
        return raw.rjust(WORD, b"\x00")
    raise ValueError(f"Unsupported static ABI type: {abi_type}")


def _pad_right(data: bytes) -> bytes:
    remainder = len(data) % WORD
    return data if remainder == 0 else data + b"\x00" * (WORD - remainder)


def encode_arguments(types: Sequence[str], values: Sequence[Any]) -> bytes:
    if len(types) != len(values):
        raise ValueError("ABI types and values differ in length")

    head_size = WORD * len(types)
    heads: list[bytes] = []
    tails: list[bytes] = []
    tail_offset = head_size
    for abi_type, value in zip(types, values):
        if abi_type in _STATIC_TYPES:
            heads.append(_encode_static(abi_type, value))
            continue
        if abi_type != "bytes":
            raise ValueError(f"Unsupported ABI type: {abi_type}")
        raw = bytes(value)
        encoded = len(raw).to_bytes(WORD, "big") + _pad_right(raw)
        heads.append(tail_offset.to_bytes(WORD, "big"))
        tails.append(encoded)
        tail_offset += len(encoded)
    return b"".join(heads) + b"".join(tails)


def encode_call(signature: str, types: Sequence[str], values: Sequence[Any]) -> str:
    return "0x" + (function_selector(signature) + encode_arguments(types, values)).hex()


def decode_arguments(types: Sequence[str], data: bytes) -> list[Any]:
    values: list[Any] = []
    for index, abi_type in enumerate(types):
        word = data[index * WORD : (index + 1) * WORD]
        if len(word) != WORD:
            raise ValueError("ABI data is shorter than its declared types")
        if abi_type.startswith("uint"):
            values.append(int.from_bytes(word, "big"))
        elif abi_type == "bool":
            values.append(bool(int.from_bytes(word, "big")))
        elif abi_type == "address":
            values.append("0x" + word[-20:].hex())
        elif abi_type == "bytes32":
            values.append("0x" + word.hex())
        elif abi_type == "bytes":
            offset = int.from_bytes(word, "big")
            length = int.from_bytes(data[offset : offset + WORD], "big")
            values.append(data[offset + WORD : offset + WORD + length])
        else:
            raise ValueError(f"Unsupported ABI type: {abi_type}")
    return values


def decode_hex_arguments(types: Sequence[str], data_hex: str) -> list[Any]:
    return decode_arguments(types, bytes.fromhex(strip_0x(data_hex)))


def decode_revert_reason(data: Any) -> str | None:
    """Extract the ``Error(string)`` message from revert data, if present."""
    if not isinstance(data, str):
        return None
    try:
        raw = bytes.fromhex(strip_0x(data))
    except ValueError:
        return None
    if not raw.startswith(ERROR_STRING_SELECTOR):
        return None
    try:
        (message,) = decode_arguments(["bytes"], raw[4:])
    except ValueError:
        return None
    return message.decode("utf-8", errors="replace")
