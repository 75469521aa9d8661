from __future__ import annotations

import os
from dataclasses import dataclass, replace

from triggerfi.orders.types import ZERO_ADDRESS, ValidationError, normalize_address, to_int

ONEINCH_V4_PROTOCOL = "0x111111125421ca6dc452d289314280a0f8842a65"

EIP712_DOMAIN_NAME = "1inch Limit Order Protocol"
EIP712_DOMAIN_VERSION = "4"


@dataclass(slots=True, frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    limit_order_protocol: str
    predicate_store: str
    native_symbol: str = "ETH"
    fee_token_decimals: int = 6

    @property
    def has_predicate_store(self) -> bool:
        return self.predicate_store != ZERO_ADDRESS

    def eip712_domain(self) -> dict[str, object]:
        return {
            "name": EIP712_DOMAIN_NAME,
            "version": EIP712_DOMAIN_VERSION,
            "chainId": self.chain_id,
            "verifyingContract": self.limit_order_protocol,
        }

    @classmethod
    def for_chain(cls, chain_id: int) -> "ChainConfig":
        config = KNOWN_CHAINS.get(chain_id)
        if config is None:
            raise ValidationError(f"Unsupported chain id: {chain_id}")
        return config

    @classmethod
    def from_env(cls) -> "ChainConfig":
        chain_id = to_int(os.getenv("CHAIN_ID"), 84532)
        protocol_override = os.getenv("LIMIT_ORDER_PROTOCOL_ADDRESS", "").strip()
        store_override = os.getenv("PREDICATE_STORE_ADDRESS", "").strip()

        base = KNOWN_CHAINS.get(chain_id)
        if base is None:
            if not protocol_override or not store_override:
                raise ValidationError(
                    f"Chain {chain_id} is not built in; set LIMIT_ORDER_PROTOCOL_ADDRESS "
                    "and PREDICATE_STORE_ADDRESS."
                )
            base = cls(
                chain_id=chain_id,
                name=os.getenv("CHAIN_NAME", f"chain-{chain_id}"),
                limit_order_protocol=ZERO_ADDRESS,
                predicate_store=ZERO_ADDRESS,
            )

        config = base
        if protocol_override:
            config = replace(
                config,
                limit_order_protocol=normalize_address(
                    protocol_override,
                    name="LIMIT_ORDER_PROTOCOL_ADDRESS",
                ),
            )
        if store_override:
            config = replace(
                config,
                predicate_store=normalize_address(store_override, name="PREDICATE_STORE_ADDRESS"),
            )
        native_symbol = os.getenv("NATIVE_SYMBOL", "").strip()
        if native_symbol:
            config = replace(config, native_symbol=native_symbol)
        return config


def _known(
    chain_id: int,
    name: str,
    protocol: str,
    predicate_store: str,
) -> ChainConfig:
    return ChainConfig(
        chain_id=chain_id,
        name=name,
        limit_order_protocol=normalize_address(protocol, name=f"{name} protocol"),
        predicate_store=normalize_address(predicate_store, name=f"{name} predicate store"),
    )


KNOWN_CHAINS: dict[int, ChainConfig] = {
    1: _known(1, "mainnet", ONEINCH_V4_PROTOCOL, ZERO_ADDRESS),
    11155111: _known(
        11155111,
        "sepolia",
        ONEINCH_V4_PROTOCOL,
        "0xd378fbce97cd181cd7a7ecce32571f1a37e226ed",
    ),
    84532: _known(
        84532,
        "baseSepolia",
        "0xe53136d9de56672e8d2665c98653ac7b8a60dc44",
        "0xb1b20c1ba8dfa44b16917a9221e48d0e85685f6a",
    ),
}
