from __future__ import annotations

import unittest

from bridge_solver.attestation.codec import (
    CodecError,
    FulfillmentPayload,
    decode_fulfillment_payload,
    decode_vaa,
    encode_fulfillment_payload,
    encode_vaa,
)

# Signed VAA emitted by the Sui solver contract on testnet (guardian set 0, one signature).
GOLDEN_VAA_HEX = (
    "01000000000100b2c90340d5c9ea5eecd5824e87dbc7fbb6f9ff415e5967fc8faa82d52676efe7"
    "31c9fcaeb6d9d61eb75b08dd166b47e75ec8a026e72e9a954c1b452d73d05d7600698617de0000"
    "00000015f6a696471cc053ede2007c1624405f7b0aa8e860f780589e358776e0b88ce2f1000000"
    "0000000003000000000000000000000000000000000000000000000000000000000000000000ff"
    "ed326eb5d14d91fd492f9793c4c31c127a00c868a6418786394fbfd61cdfcd"
)
GOLDEN_EMITTER = "0xf6a696471cc053ede2007c1624405f7b0aa8e860f780589e358776e0b88ce2f1"
GOLDEN_SOLVER = bytes.fromhex("ffed326eb5d14d91fd492f9793c4c31c127a00c868a6418786394fbfd61cdfcd")


class VaaCodecTests(unittest.TestCase):
    def setUp(self) -> None:
        self.raw = bytes.fromhex(GOLDEN_VAA_HEX)

    def test_golden_vaa_header_and_body(self) -> None:
        vaa = decode_vaa(self.raw)

        self.assertEqual(len(self.raw), 187)
        self.assertEqual(vaa.version, 1)
        self.assertEqual(vaa.guardian_set_index, 0)
        self.assertEqual(len(vaa.signatures), 1)
        self.assertEqual(vaa.signatures[0].guardian_index, 0)
        self.assertEqual(vaa.signatures[0].r.hex()[:8], "b2c90340")
        self.assertEqual(vaa.signatures[0].v, 0)
        self.assertEqual(vaa.timestamp, 1_770_395_614)
        self.assertEqual(vaa.nonce, 0)
        self.assertEqual(vaa.emitter_chain, 21)
        self.assertEqual(vaa.emitter_hex, GOLDEN_EMITTER)
        self.assertEqual(vaa.sequence, 3)
        self.assertEqual(vaa.consistency_level, 0)
        self.assertEqual(len(vaa.payload), 64)
        self.assertEqual(vaa.body, self.raw[72:])

    def test_golden_vaa_reencodes_byte_for_byte(self) -> None:
        self.assertEqual(encode_vaa(decode_vaa(self.raw)), self.raw)

    def test_digest_is_double_keccak_of_body(self) -> None:
        digest = decode_vaa(self.raw).digest
        self.assertTrue(digest.startswith("0x"))
        self.assertEqual(len(digest), 66)
        # the signatures are not part of the digest
        tampered = bytearray(self.raw)
        tampered[10] ^= 0xFF
        self.assertEqual(decode_vaa(bytes(tampered)).digest, digest)

    def test_truncated_vaa_raises(self) -> None:
        with self.assertRaises(CodecError):
            decode_vaa(self.raw[:100])
        with self.assertRaises(CodecError):
            decode_vaa(b"")

    def test_unsupported_version_raises(self) -> None:
        with self.assertRaises(CodecError):
            decode_vaa(b"\x02" + self.raw[1:])


class FulfillmentPayloadTests(unittest.TestCase):
    def test_golden_payload(self) -> None:
        payload = decode_fulfillment_payload(decode_vaa(bytes.fromhex(GOLDEN_VAA_HEX)).payload)

        self.assertEqual(payload.order_id_hex, "0x" + "00" * 32)
        self.assertEqual(payload.solver, GOLDEN_SOLVER)
        self.assertIsNone(payload.amount)

    def test_payload_with_amount_word(self) -> None:
        raw = bytes.fromhex(
            "ab" * 32
            + "00" * 12
            + "5a" * 20
            + "00" * 24
            + "0000000077359400"
        )
        payload = decode_fulfillment_payload(raw)

        self.assertEqual(payload.order_id_hex, "0x" + "ab" * 32)
        self.assertEqual(payload.solver, bytes(12) + b"\x5a" * 20)
        self.assertEqual(payload.amount, 2_000_000_000)
        self.assertEqual(encode_fulfillment_payload(payload), raw)

    def test_short_solver_is_left_padded(self) -> None:
        encoded = encode_fulfillment_payload(FulfillmentPayload(order_id=b"\x01" * 32, solver=b"\x5a" * 20))
        self.assertEqual(encoded[32:44], bytes(12))
        self.assertEqual(len(encoded), 64)

    def test_trailing_bytes_raise(self) -> None:
        with self.assertRaises(CodecError):
            decode_fulfillment_payload(bytes(64) + b"\x01")

    def test_truncated_payload_raises(self) -> None:
        with self.assertRaises(CodecError):
            decode_fulfillment_payload(bytes(40))

    def test_amount_must_fit_in_word(self) -> None:
        with self.assertRaises(CodecError):
            encode_fulfillment_payload(FulfillmentPayload(order_id=bytes(32), solver=bytes(32), amount=1 << 256))


if __name__ == "__main__":
    unittest.main()
