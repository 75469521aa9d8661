from __future__ import annotations

import unittest

from eth_utils import keccak

from triggerfi.chain.dry_run import predicate_id_from_predicate
from triggerfi.orders.encoding import (
    MAX_JOINED_CONDITIONS,
    check_condition_calldata,
    encode_and,
    encode_comparison,
    encode_condition_check,
    encode_or,
    encode_static_call,
    pack_offsets,
    selector,
)
from triggerfi.orders.types import ValidationError

PREDICATE_STORE = "0xb1b20c1ba8dfa44b16917a9221e48d0e85685f6a"
PREDICATE_ID = "0x" + "ab" * 32


def _word(data: bytes, start: int) -> int:
    return int.from_bytes(data[start : start + 32], "big")


class PredicateEncodingTests(unittest.TestCase):
    def test_selector_is_first_four_bytes_of_signature_hash(self) -> None:
        self.assertEqual(selector("gt(uint256,bytes)"), keccak(text="gt(uint256,bytes)")[:4])
        self.assertEqual(len(selector("checkCondition(bytes32)")), 4)

    def test_condition_check_layout(self) -> None:
        predicate = encode_condition_check(PREDICATE_STORE, PREDICATE_ID)

        self.assertEqual(predicate[:4], selector("gt(uint256,bytes)"))
        # threshold word loses its two leading bytes, leaving 30 zero bytes for 0
        self.assertEqual(predicate[4:34], b"\x00" * 30)
        self.assertEqual(_word(predicate, 34), 0x40)

        static_len = _word(predicate, 66)
        static_call = predicate[98 : 98 + static_len]
        self.assertEqual(static_call[:4], selector("arbitraryStaticCall(address,bytes)"))
        self.assertEqual(static_call[4:14], b"\x00" * 10)
        self.assertEqual(static_call[14:34], bytes.fromhex(PREDICATE_STORE[2:]))
        self.assertEqual(_word(static_call, 34), 0x40)

        calldata_len = _word(static_call, 66)
        calldata = static_call[98 : 98 + calldata_len]
        self.assertEqual(
            calldata,
            selector("checkCondition(bytes32)") + bytes.fromhex(PREDICATE_ID[2:]),
        )

    def test_condition_check_is_deterministic(self) -> None:
        first = encode_condition_check(PREDICATE_STORE, PREDICATE_ID)
        second = encode_condition_check(PREDICATE_STORE.upper().replace("0X", "0x"), PREDICATE_ID)
        self.assertEqual(first, second)

    def test_predicate_id_can_be_read_back(self) -> None:
        predicate = encode_condition_check(PREDICATE_STORE, PREDICATE_ID)
        self.assertEqual(predicate_id_from_predicate(predicate), PREDICATE_ID)
        self.assertIsNone(predicate_id_from_predicate(b"\x01\x02"))

    def test_check_condition_calldata_requires_32_byte_id(self) -> None:
        with self.assertRaises(ValidationError):
            check_condition_calldata("0x1234")
        self.assertEqual(len(check_condition_calldata(PREDICATE_ID)), 36)

    def test_comparison_selectors(self) -> None:
        static_call = encode_static_call(PREDICATE_STORE, b"\x01")
        self.assertEqual(encode_comparison("<", 5, static_call)[:4], selector("lt(uint256,bytes)"))
        self.assertEqual(encode_comparison("=", 5, static_call)[:4], selector("eq(uint256,bytes)"))
        encoded = encode_comparison(">", 7, static_call)
        self.assertEqual(int.from_bytes(encoded[4:34], "big"), 7)

    def test_comparison_rejects_bad_inputs(self) -> None:
        static_call = encode_static_call(PREDICATE_STORE, b"\x01")
        with self.assertRaises(ValidationError):
            encode_comparison(">=", 1, static_call)
        with self.assertRaises(ValidationError):
            encode_comparison(">", -1, static_call)
        with self.assertRaises(ValidationError):
            encode_comparison(">", 2**256, static_call)
        with self.assertRaises(ValidationError):
            encode_comparison(">", 1.5, static_call)  # type: ignore[arg-type]
        with self.assertRaises(ValidationError):
            encode_comparison(">", True, static_call)  # type: ignore[arg-type]

    def test_static_call_rejects_invalid_target(self) -> None:
        with self.assertRaises(ValidationError):
            encode_static_call("not-an-address", b"\x00")

    def test_pack_offsets_uses_cumulative_32_bit_lanes(self) -> None:
        packed = pack_offsets([b"a" * 10, b"b" * 20, b"c" * 5])
        self.assertEqual(packed & 0xFFFFFFFF, 10)
        self.assertEqual((packed >> 32) & 0xFFFFFFFF, 30)
        self.assertEqual((packed >> 64) & 0xFFFFFFFF, 35)
        self.assertEqual(packed >> 96, 0)

    def test_join_limits(self) -> None:
        with self.assertRaises(ValidationError):
            pack_offsets([])
        with self.assertRaises(ValidationError):
            encode_and([b"\x01"] * (MAX_JOINED_CONDITIONS + 1))
        encode_or([b"\x01"] * MAX_JOINED_CONDITIONS)

    def test_and_or_layout(self) -> None:
        first = encode_condition_check(PREDICATE_STORE, PREDICATE_ID)
        second = encode_condition_check(PREDICATE_STORE, "0x" + "cd" * 32)

        joined = encode_and([first, second])
        self.assertEqual(joined[:4], selector("and(uint256,bytes)"))
        packed = int.from_bytes(joined[4:34], "big")
        self.assertEqual(packed, len(first) | ((len(first) + len(second)) << 32))
        blob_len = _word(joined, 66)
        self.assertEqual(joined[98 : 98 + blob_len], first + second)

        either = encode_or([first, second])
        self.assertEqual(either[:4], selector("or(uint256,bytes)"))
        self.assertEqual(either[4:], joined[4:])


if __name__ == "__main__":
    unittest.main()
