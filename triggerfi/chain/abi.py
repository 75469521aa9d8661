from __future__ import annotations

from typing import Any


def _param(name: str, abi_type: str, components: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    param: dict[str, Any] = {"name": name, "type": abi_type}
    if components is not None:
        param["components"] = components
    return param


def _function(
    name: str,
    inputs: list[dict[str, Any]],
    outputs: list[dict[str, Any]],
    mutability: str,
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs,
        "stateMutability": mutability,
    }


ORDER_COMPONENTS: list[dict[str, Any]] = [
    _param("salt", "bytes32"),
    _param("makerAsset", "address"),
    _param("takerAsset", "address"),
    _param("maker", "address"),
    _param("receiver", "address"),
    _param("allowedSender", "address"),
    _param("makingAmount", "uint256"),
    _param("takingAmount", "uint256"),
    _param("offsets", "bytes"),
    _param("interactions", "bytes"),
    _param("predicate", "bytes"),
    _param("permit", "bytes"),
    _param("getMakingAmount", "bytes"),
    _param("getTakingAmount", "bytes"),
    _param("preInteraction", "bytes"),
    _param("postInteraction", "bytes"),
]

LIMIT_ORDER_PROTOCOL_ABI: list[dict[str, Any]] = [
    _function(
        "fillOrder",
        [
            _param("order", "tuple", ORDER_COMPONENTS),
            _param("r", "bytes32"),
            _param("vs", "bytes32"),
            _param("amount", "uint256"),
            _param("takerTraits", "uint256"),
        ],
        [
            _param("makingAmount", "uint256"),
            _param("takingAmount", "uint256"),
            _param("orderHash", "bytes32"),
        ],
        "payable",
    ),
    _function("cancelOrder", [_param("orderHash", "bytes32")], [], "nonpayable"),
    _function(
        "remaining",
        [_param("orderHash", "bytes32")],
        [_param("", "uint256")],
        "view",
    ),
    _function(
        "arbitraryStaticCall",
        [_param("target", "address"), _param("data", "bytes")],
        [_param("", "uint256")],
        "view",
    ),
]

PREDICATE_STORE_ABI: list[dict[str, Any]] = [
    _function("checkCondition", [_param("predicateId", "bytes32")], [_param("", "uint256")], "view"),
    _function("checkConditions", [_param("predicateId", "bytes32")], [_param("", "bool")], "view"),
    _function("updateCount", [_param("predicateId", "bytes32")], [_param("", "uint256")], "view"),
    _function("getUpdateFees", [_param("predicateId", "bytes32")], [_param("", "uint256")], "view"),
    _function("collectFees", [_param("predicateId", "bytes32")], [], "payable"),
    _function("keeper", [], [_param("", "address")], "view"),
    _function("treasury", [], [_param("", "address")], "view"),
    _function(
        "setTestResult",
        [_param("predicateId", "bytes32"), _param("result", "bool")],
        [],
        "nonpayable",
    ),
]
