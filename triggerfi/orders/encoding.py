from __future__ import annotations

from typing import Sequence

from eth_abi import encode
from eth_utils import keccak

from .types import ValidationError, hex_to_bytes, normalize_address

MAX_JOINED_CONDITIONS = 8
MAX_OFFSET = 2**32 - 1
UINT256_MAX = 2**256 - 1

# Leading bytes dropped from every ABI-encoded argument block after the selector.
PARAMS_TRIM_BYTES = 2

COMPARISON_SIGNATURES = {
    ">": "gt(uint256,bytes)",
    "<": "lt(uint256,bytes)",
    "=": "eq(uint256,bytes)",
}


def selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def _packed_call(signature: str, types: list[str], values: list[object]) -> bytes:
    params = encode(types, values)
    return selector(signature) + params[PARAMS_TRIM_BYTES:]


def encode_static_call(target: str, calldata: bytes | str) -> bytes:
    address = normalize_address(target, name="target")
    return _packed_call(
        "arbitraryStaticCall(address,bytes)",
        ["address", "bytes"],
        [address, hex_to_bytes(calldata)],
    )


def encode_comparison(operator: str, threshold: int, static_call: bytes) -> bytes:
    signature = COMPARISON_SIGNATURES.get(operator)
    if signature is None:
        raise ValidationError(f"Unsupported comparison operator: {operator!r}")
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise ValidationError(f"Comparison threshold must be an integer: {threshold!r}")
    if threshold < 0 or threshold > UINT256_MAX:
        raise ValidationError(f"Comparison threshold out of uint256 range: {threshold}")
    return _packed_call(signature, ["uint256", "bytes"], [threshold, bytes(static_call)])


def pack_offsets(conditions: Sequence[bytes]) -> int:
    if not conditions:
        raise ValidationError("At least one predicate is required to join.")
    if len(conditions) > MAX_JOINED_CONDITIONS:
        raise ValidationError(
            f"At most {MAX_JOINED_CONDITIONS} predicates can be joined, got {len(conditions)}."
        )

    cumulative = 0
    packed = 0
    for index, condition in enumerate(conditions):
        cumulative += len(condition)
        if cumulative > MAX_OFFSET:
            raise ValidationError("Joined predicate data exceeds the 32-bit offset range.")
        packed |= cumulative << (32 * index)
    return packed


def _encode_join(signature: str, conditions: Sequence[bytes]) -> bytes:
    blobs = [bytes(condition) for condition in conditions]
    packed = pack_offsets(blobs)
    return _packed_call(signature, ["uint256", "bytes"], [packed, b"".join(blobs)])


def encode_and(conditions: Sequence[bytes]) -> bytes:
    return _encode_join("and(uint256,bytes)", conditions)


def encode_or(conditions: Sequence[bytes]) -> bytes:
    return _encode_join("or(uint256,bytes)", conditions)


def check_condition_calldata(predicate_id: bytes | str) -> bytes:
    identifier = hex_to_bytes(predicate_id)
    if len(identifier) != 32:
        raise ValidationError("Predicate id must be 32 bytes.")
    return selector("checkCondition(bytes32)") + encode(["bytes32"], [identifier])


def encode_condition_check(predicate_store: str, predicate_id: bytes | str) -> bytes:
    static_call = encode_static_call(predicate_store, check_condition_calldata(predicate_id))
    return encode_comparison(">", 0, static_call)
