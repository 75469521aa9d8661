from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal, Protocol
from urllib.parse import urlsplit

from eth_utils import is_address, to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ORDER_STATUS_ACTIVE = "active"
ORDER_STATUS_FILLED = "filled"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_EXPIRED = "expired"
TERMINAL_ORDER_STATUSES = frozenset(
    {ORDER_STATUS_FILLED, ORDER_STATUS_CANCELLED, ORDER_STATUS_EXPIRED}
)
ORDER_STATUSES = frozenset({ORDER_STATUS_ACTIVE, *TERMINAL_ORDER_STATUSES})

FILL_OUTCOME_FILLED = "filled"
FILL_OUTCOME_NOT_FILLABLE = "not_fillable"
FILL_OUTCOME_ALREADY_FILLED = "already_filled"
FILL_OUTCOME_CANCELLED = "cancelled"
FILL_OUTCOME_INVALIDATED = "invalidated"
FILL_OUTCOME_REJECTED = "rejected"
FILL_OUTCOME_BUSY = "busy"
FILL_OUTCOME_FAILED = "failed"

AuthType = Literal["none", "apiKey", "bearer"]
Operator = Literal[">", "<", "="]
LogicOperator = Literal["AND", "OR"]

AUTH_TYPES: frozenset[str] = frozenset({"none", "apiKey", "bearer"})
OPERATORS: frozenset[str] = frozenset({">", "<", "="})
LOGIC_OPERATORS: frozenset[str] = frozenset({"AND", "OR"})


class ValidationError(ValueError):
    pass


class SigningError(RuntimeError):
    pass


class ChainWriteError(RuntimeError):
    def __init__(self, message: str, *, method: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.tx_hash = tx_hash


class FillRevertedError(ChainWriteError):
    pass


class KeeperAuthorizationError(PermissionError):
    pass


class InvalidStatusTransition(RuntimeError):
    def __init__(self, *, order_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Order {order_id} cannot move from {current!r} to {requested!r}."
        )
        self.order_id = order_id
        self.current = current
        self.requested = requested


class InsufficientFeeError(RuntimeError):
    def __init__(self, *, predicate_id: str, owed: int, remitted: int) -> None:
        super().__init__(
            f"Fee remittance for {predicate_id} is short: owed={owed} remitted={remitted}"
        )
        self.predicate_id = predicate_id
        self.owed = owed
        self.remitted = remitted


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text) if text.lstrip("-").isdigit() else int(float(text))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float | None) -> float | None:
    try:
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def hex_to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value).strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    if not text:
        return b""
    return bytes.fromhex(text)


def bytes_to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def normalize_address(value: Any, *, name: str) -> str:
    text = str(value or "").strip()
    if not is_address(text):
        raise ValidationError(f"{name} is not a valid address: {text!r}")
    return to_checksum_address(text)


@dataclass(slots=True, frozen=True)
class Condition:
    endpoint: str
    json_path: str
    operator: str
    threshold: float
    auth_type: str = "none"
    auth_value: str = field(default="", repr=False)
    auth_ref: str = ""

    def validate(self, *, index: int = 0, require_secret: bool = True) -> None:
        label = f"Condition {index + 1}"
        parsed = urlsplit(self.endpoint)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
            raise ValidationError(f"{label}: invalid URL format")
        if not self.json_path or not self.json_path.strip():
            raise ValidationError(f"{label}: JSON path is required")
        if self.operator not in OPERATORS:
            raise ValidationError(f"{label}: unsupported operator {self.operator!r}")
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, float)):
            raise ValidationError(f"{label}: threshold must be a number")
        if not math.isfinite(float(self.threshold)):
            raise ValidationError(f"{label}: threshold must be finite")
        if self.auth_type not in AUTH_TYPES:
            raise ValidationError(f"{label}: unsupported auth type {self.auth_type!r}")
        if self.auth_type == "none":
            if self.auth_value or self.auth_ref:
                raise ValidationError(f"{label}: auth value given for auth type 'none'")
        elif require_secret and not self.auth_value:
            raise ValidationError(f"{label}: auth value required for {self.auth_type}")
        elif not require_secret and not (self.auth_value or self.auth_ref):
            raise ValidationError(f"{label}: auth reference required for {self.auth_type}")

    def canonical(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "authType": self.auth_type,
            "jsonPath": self.json_path,
            "operator": self.operator,
            "threshold": repr(float(self.threshold)),
        }

    def to_document(self) -> dict[str, Any]:
        document = dict(self.canonical())
        document["threshold"] = float(self.threshold)
        if self.auth_ref:
            document["authRef"] = self.auth_ref
        return document

    def with_secret(self, auth_value: str) -> "Condition":
        return replace(self, auth_value=auth_value)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Condition":
        threshold_raw = payload.get("threshold")
        threshold = to_float(threshold_raw, None)
        if threshold is None:
            raise ValidationError(f"Threshold must be a number: {threshold_raw!r}")
        return cls(
            endpoint=str(payload.get("endpoint") or "").strip(),
            json_path=str(payload.get("jsonPath") or payload.get("json_path") or "").strip(),
            operator=str(payload.get("operator") or "").strip(),
            threshold=threshold,
            auth_type=str(payload.get("authType") or payload.get("auth_type") or "none").strip(),
            auth_value=str(payload.get("authValue") or payload.get("auth_value") or ""),
            auth_ref=str(payload.get("authRef") or payload.get("auth_ref") or "").strip(),
        )


def validate_conditions(
    conditions: list[Condition] | tuple[Condition, ...],
    logic_operator: str,
    *,
    require_secret: bool = True,
) -> None:
    if not conditions:
        raise ValidationError("At least one condition is required.")
    if logic_operator not in LOGIC_OPERATORS:
        raise ValidationError(f"Unsupported logic operator: {logic_operator!r}")
    for index, condition in enumerate(conditions):
        condition.validate(index=index, require_secret=require_secret)


@dataclass(slots=True, frozen=True)
class PredicateConfig:
    predicate_id: str
    conditions: tuple[Condition, ...]
    logic_operator: str
    creator: str
    last_result: bool = False
    last_checked: str | None = None
    check_count: int = 0
    created_at: str | None = None

    @property
    def use_and(self) -> bool:
        return self.logic_operator == "AND"

    def to_document(self) -> dict[str, Any]:
        return {
            "predicateId": self.predicate_id,
            "apiConditions": [condition.to_document() for condition in self.conditions],
            "logicOperator": self.logic_operator,
            "creator": self.creator,
            "lastResult": self.last_result,
            "lastChecked": self.last_checked,
            "checkCount": self.check_count,
            "createdAt": self.created_at or now_iso(),
        }

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> "PredicateConfig":
        return cls(
            predicate_id=str(payload.get("predicateId") or ""),
            conditions=tuple(
                Condition.from_dict(item) for item in payload.get("apiConditions") or []
            ),
            logic_operator=str(payload.get("logicOperator") or "AND"),
            creator=str(payload.get("creator") or ""),
            last_result=to_bool(payload.get("lastResult"), False),
            last_checked=payload.get("lastChecked"),
            check_count=max(0, to_int(payload.get("checkCount"), 0)),
            created_at=payload.get("createdAt"),
        )


@dataclass(slots=True, frozen=True)
class Order:
    salt: bytes
    maker_asset: str
    taker_asset: str
    maker: str
    receiver: str
    allowed_sender: str
    making_amount: int
    taking_amount: int
    offsets: bytes = b""
    interactions: bytes = b""
    predicate: bytes = b""
    permit: bytes = b""
    get_making_amount: bytes = b""
    get_taking_amount: bytes = b""
    pre_interaction: bytes = b""
    post_interaction: bytes = b""

    def to_tuple(self) -> tuple[Any, ...]:
        return (
            self.salt,
            self.maker_asset,
            self.taker_asset,
            self.maker,
            self.receiver,
            self.allowed_sender,
            self.making_amount,
            self.taking_amount,
            self.offsets,
            self.interactions,
            self.predicate,
            self.permit,
            self.get_making_amount,
            self.get_taking_amount,
            self.pre_interaction,
            self.post_interaction,
        )

    def to_message(self) -> dict[str, Any]:
        return {
            "salt": self.salt,
            "makerAsset": self.maker_asset,
            "takerAsset": self.taker_asset,
            "maker": self.maker,
            "receiver": self.receiver,
            "allowedSender": self.allowed_sender,
            "makingAmount": self.making_amount,
            "takingAmount": self.taking_amount,
            "offsets": self.offsets,
            "interactions": self.interactions,
            "predicate": self.predicate,
            "permit": self.permit,
            "getMakingAmount": self.get_making_amount,
            "getTakingAmount": self.get_taking_amount,
            "preInteraction": self.pre_interaction,
            "postInteraction": self.post_interaction,
        }

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {}
        for key, value in self.to_message().items():
            if isinstance(value, bytes):
                document[key] = bytes_to_hex(value)
            elif isinstance(value, int):
                # Firestore integers are 64-bit; token amounts are not.
                document[key] = str(value)
            else:
                document[key] = value
        return document

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> "Order":
        return cls(
            salt=hex_to_bytes(payload.get("salt")),
            maker_asset=normalize_address(payload.get("makerAsset"), name="makerAsset"),
            taker_asset=normalize_address(payload.get("takerAsset"), name="takerAsset"),
            maker=normalize_address(payload.get("maker"), name="maker"),
            receiver=normalize_address(payload.get("receiver") or ZERO_ADDRESS, name="receiver"),
            allowed_sender=normalize_address(
                payload.get("allowedSender") or ZERO_ADDRESS,
                name="allowedSender",
            ),
            making_amount=to_int(payload.get("makingAmount"), 0),
            taking_amount=to_int(payload.get("takingAmount"), 0),
            offsets=hex_to_bytes(payload.get("offsets")),
            interactions=hex_to_bytes(payload.get("interactions")),
            predicate=hex_to_bytes(payload.get("predicate")),
            permit=hex_to_bytes(payload.get("permit")),
            get_making_amount=hex_to_bytes(payload.get("getMakingAmount")),
            get_taking_amount=hex_to_bytes(payload.get("getTakingAmount")),
            pre_interaction=hex_to_bytes(payload.get("preInteraction")),
            post_interaction=hex_to_bytes(payload.get("postInteraction")),
        )


@dataclass(slots=True, frozen=True)
class OrderRecord:
    order_id: str
    order_hash: str
    predicate_id: str
    order: Order
    signature: str
    conditions: tuple[Condition, ...]
    logic_operator: str
    status: str = ORDER_STATUS_ACTIVE
    chain_id: int = 1
    created_at: int = 0
    updated_at: int = 0
    update_count: int = 0
    accumulated_fees: int = 0
    filled_at: int | None = None
    fill_tx_hash: str | None = None
    fee_tx_hash: str | None = None
    filled_by: str | None = None
    cancelled_at: int | None = None
    cancel_tx_hash: str | None = None
    last_error: str | None = None
    last_error_at: int | None = None

    @property
    def maker(self) -> str:
        return self.order.maker

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def to_document(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderHash": self.order_hash,
            "predicateId": self.predicate_id,
            "order": self.order.to_document(),
            "signature": self.signature,
            "maker": self.order.maker,
            "makerAsset": self.order.maker_asset,
            "takerAsset": self.order.taker_asset,
            "makerAmount": str(self.order.making_amount),
            "takerAmount": str(self.order.taking_amount),
            "apiConditions": [condition.to_document() for condition in self.conditions],
            "logicOperator": self.logic_operator,
            "status": self.status,
            "chainId": self.chain_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "updateCount": self.update_count,
            "accumulatedFees": str(self.accumulated_fees),
            "filledAt": self.filled_at,
            "fillTxHash": self.fill_tx_hash,
            "feeTxHash": self.fee_tx_hash,
            "filledBy": self.filled_by,
            "cancelledAt": self.cancelled_at,
            "cancelTxHash": self.cancel_tx_hash,
            "lastError": self.last_error,
            "lastErrorAt": self.last_error_at,
        }

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> "OrderRecord":
        return cls(
            order_id=str(payload.get("orderId") or ""),
            order_hash=str(payload.get("orderHash") or ""),
            predicate_id=str(payload.get("predicateId") or ""),
            order=Order.from_document(payload.get("order") or {}),
            signature=str(payload.get("signature") or ""),
            conditions=tuple(
                Condition.from_dict(item) for item in payload.get("apiConditions") or []
            ),
            logic_operator=str(payload.get("logicOperator") or "AND"),
            status=str(payload.get("status") or ORDER_STATUS_ACTIVE),
            chain_id=to_int(payload.get("chainId"), 1),
            created_at=to_int(payload.get("createdAt"), 0),
            updated_at=to_int(payload.get("updatedAt"), 0),
            update_count=max(0, to_int(payload.get("updateCount"), 0)),
            accumulated_fees=max(0, to_int(payload.get("accumulatedFees"), 0)),
            filled_at=payload.get("filledAt"),
            fill_tx_hash=payload.get("fillTxHash"),
            fee_tx_hash=payload.get("feeTxHash"),
            filled_by=payload.get("filledBy"),
            cancelled_at=payload.get("cancelledAt"),
            cancel_tx_hash=payload.get("cancelTxHash"),
            last_error=payload.get("lastError"),
            last_error_at=payload.get("lastErrorAt"),
        )


@dataclass(slots=True, frozen=True)
class ConditionResult:
    index: int
    passed: bool
    value: float | None
    reason: str


@dataclass(slots=True, frozen=True)
class EvaluationResult:
    result: bool
    logic_operator: str
    conditions: tuple[ConditionResult, ...]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: int | None = None
    gas_used: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(slots=True, frozen=True)
class FeeQuote:
    predicate_id: str
    update_count: int
    fee_units: int
    payment_wei: int
    native_price: float
    source: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class FillResult:
    outcome: str
    order_id: str
    reason: str
    fee_tx_hash: str | None = None
    fill_tx_hash: str | None = None
    fee_quote: FeeQuote | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.outcome in {FILL_OUTCOME_NOT_FILLABLE, FILL_OUTCOME_BUSY, FILL_OUTCOME_FAILED}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class PredicateUpdate:
    predicate_id: str
    result: bool
    update_count: int
    accumulated_fees: int
    orders_updated: int
    tx_hash: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OrderRegistry(Protocol):
    async def create_order(self, record: OrderRecord) -> None:
        ...

    async def get_order(self, order_id: str) -> OrderRecord | None:
        ...

    async def list_active_orders(self) -> list[OrderRecord]:
        ...

    async def list_orders_by_maker(self, maker: str, *, limit: int = 50) -> list[OrderRecord]:
        ...

    async def list_orders_by_predicate(self, predicate_id: str) -> list[OrderRecord]:
        ...

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> OrderRecord:
        ...

    async def update_order_fees(
        self,
        order_id: str,
        *,
        update_count: int,
        accumulated_fees: int,
    ) -> None:
        ...

    async def record_order_error(self, order_id: str, *, error: str) -> None:
        ...

    async def save_predicate_config(self, config: PredicateConfig) -> None:
        ...

    async def get_predicate_config(self, predicate_id: str) -> PredicateConfig | None:
        ...

    async def update_predicate_result(
        self,
        predicate_id: str,
        *,
        result: bool,
        check_count: int,
    ) -> None:
        ...

    def subscribe_active_orders(self) -> "ActiveOrderSubscription":
        ...


class ActiveOrderSubscription(Protocol):
    def __aiter__(self) -> "ActiveOrderSubscription":
        ...

    async def __anext__(self) -> list[OrderRecord]:
        ...

    def unsubscribe(self) -> None:
        ...


class PredicateStore(Protocol):
    async def check_condition(self, predicate_id: str) -> int:
        ...

    async def update_count(self, predicate_id: str) -> int:
        ...

    async def get_update_fees(self, predicate_id: str) -> int:
        ...

    async def keeper_address(self) -> str:
        ...

    async def commit_result(self, predicate_id: str, result: bool) -> TxReceipt:
        ...

    async def collect_fees(self, predicate_id: str, *, value_wei: int) -> TxReceipt:
        ...


class LimitOrderProtocol(Protocol):
    async def simulate_fill(self, order: Order, r: bytes, vs: bytes) -> None:
        ...

    async def fill_order(self, order: Order, r: bytes, vs: bytes) -> TxReceipt:
        ...

    async def cancel_order(self, order_hash: str) -> TxReceipt:
        ...

    async def remaining(self, order_hash: str) -> int:
        ...

    async def invalidation_reason(self, order_hash: str) -> str | None:
        """Return the terminal status that consumed the order on-chain, if it can be observed."""
        ...


class FillGuardStore(Protocol):
    async def acquire_fill_guard(self, *, order_id: str, owner: str, ttl_seconds: int) -> bool:
        ...

    async def release_fill_guard(self, *, order_id: str, owner: str) -> bool:
        ...
