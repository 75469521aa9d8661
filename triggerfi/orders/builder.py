from __future__ import annotations

import json
import secrets
from typing import Any, Sequence

from eth_abi import encode
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from .types import (
    ZERO_ADDRESS,
    Condition,
    Order,
    SigningError,
    ValidationError,
    bytes_to_hex,
    hex_to_bytes,
    normalize_address,
    now_epoch_ms,
)

ORDER_TUPLE_TYPE = (
    "(bytes32,address,address,address,address,address,uint256,uint256,"
    "bytes,bytes,bytes,bytes,bytes,bytes,bytes,bytes)"
)

ORDER_EIP712_TYPES: list[dict[str, str]] = [
    {"name": "salt", "type": "bytes32"},
    {"name": "makerAsset", "type": "address"},
    {"name": "takerAsset", "type": "address"},
    {"name": "maker", "type": "address"},
    {"name": "receiver", "type": "address"},
    {"name": "allowedSender", "type": "address"},
    {"name": "makingAmount", "type": "uint256"},
    {"name": "takingAmount", "type": "uint256"},
    {"name": "offsets", "type": "bytes"},
    {"name": "interactions", "type": "bytes"},
    {"name": "predicate", "type": "bytes"},
    {"name": "permit", "type": "bytes"},
    {"name": "getMakingAmount", "type": "bytes"},
    {"name": "getTakingAmount", "type": "bytes"},
    {"name": "preInteraction", "type": "bytes"},
    {"name": "postInteraction", "type": "bytes"},
]

PREDICATE_ID_DOMAIN = b"triggerfi.predicate.v1"
SECP256K1_HALF_ORDER = 0x7FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF5D576E7357A4501DDFE92F46681B20A0


def hash_order(order: Order) -> str:
    return bytes_to_hex(keccak(encode([ORDER_TUPLE_TYPE], [order.to_tuple()])))


def make_order_id(maker: str, epoch_ms: int | None = None) -> str:
    return f"{maker}-{epoch_ms if epoch_ms is not None else now_epoch_ms()}"


def split_signature(signature: bytes | str) -> tuple[bytes, bytes]:
    """Return the ``(r, vs)`` pair expected by ``fillOrder`` (EIP-2098 compact form)."""
    raw = hex_to_bytes(signature)
    if len(raw) == 64:
        return raw[:32], raw[32:]
    if len(raw) != 65:
        raise ValidationError(f"Signature must be 64 or 65 bytes, got {len(raw)}.")

    r = raw[:32]
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v < 27:
        v += 27
    if v not in (27, 28):
        raise ValidationError(f"Unexpected signature recovery id: {v}")
    if s > SECP256K1_HALF_ORDER:
        raise ValidationError("Signature s value is not in the lower half order.")

    vs = s | ((v - 27) << 255)
    return r, vs.to_bytes(32, "big")


def derive_predicate_id(
    conditions: Sequence[Condition],
    logic_operator: str,
    creator: str,
) -> str:
    payload = {
        "conditions": [condition.canonical() for condition in conditions],
        "logic": logic_operator,
        "creator": normalize_address(creator, name="creator").lower(),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return bytes_to_hex(keccak(PREDICATE_ID_DOMAIN + canonical.encode("utf-8")))


class OrderBuilder:
    def __init__(self, *, domain: dict[str, Any]) -> None:
        self._domain = dict(domain)
        self._seen_salts: set[bytes] = set()

    @property
    def domain(self) -> dict[str, Any]:
        return dict(self._domain)

    def build(
        self,
        *,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        taking_amount: int,
        predicate: bytes,
        maker: str,
        receiver: str = ZERO_ADDRESS,
        allowed_sender: str = ZERO_ADDRESS,
        salt: bytes | None = None,
    ) -> Order:
        maker_asset = normalize_address(maker_asset, name="makerAsset")
        taker_asset = normalize_address(taker_asset, name="takerAsset")
        if maker_asset == taker_asset:
            raise ValidationError("Maker and taker assets must differ.")
        for name, amount in (("makingAmount", making_amount), ("takingAmount", taking_amount)):
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise ValidationError(f"{name} must be a positive integer: {amount!r}")

        order_salt = salt if salt is not None else secrets.token_bytes(32)
        if len(order_salt) != 32:
            raise ValidationError("Salt must be 32 bytes.")
        if order_salt in self._seen_salts:
            raise ValidationError("Salt has already been used by this builder.")
        self._seen_salts.add(order_salt)

        return Order(
            salt=order_salt,
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            maker=normalize_address(maker, name="maker"),
            receiver=normalize_address(receiver or ZERO_ADDRESS, name="receiver"),
            allowed_sender=normalize_address(allowed_sender or ZERO_ADDRESS, name="allowedSender"),
            making_amount=making_amount,
            taking_amount=taking_amount,
            predicate=bytes(predicate),
        )

    def typed_data(self, order: Order) -> Any:
        return encode_typed_data(
            domain_data=self._domain,
            message_types={"Order": ORDER_EIP712_TYPES},
            message_data=order.to_message(),
        )

    def sign(self, order: Order, signer: Any) -> str:
        sign_message = getattr(signer, "sign_message", None)
        if not callable(sign_message):
            raise SigningError("Signer cannot sign typed data.")

        signer_address = getattr(signer, "address", None)
        if signer_address and normalize_address(signer_address, name="signer") != order.maker:
            raise SigningError("Signer address does not match the order maker.")

        try:
            signed = sign_message(self.typed_data(order))
        except Exception as error:
            raise SigningError(f"Typed data signing failed: {error}") from error

        signature = bytes(signed.signature)
        if len(signature) != 65:
            raise SigningError(f"Unexpected signature length: {len(signature)}")
        return bytes_to_hex(signature)

    def hash(self, order: Order) -> str:
        return hash_order(order)
