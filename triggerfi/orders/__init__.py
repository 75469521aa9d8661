from .builder import OrderBuilder, derive_predicate_id, hash_order, make_order_id, split_signature
from .conditions import ConditionEvaluator
from .encoding import (
    encode_and,
    encode_comparison,
    encode_condition_check,
    encode_or,
    encode_static_call,
)
from .types import (
    Condition,
    Order,
    OrderRecord,
    PredicateConfig,
)

__all__ = [
    "Condition",
    "ConditionEvaluator",
    "Order",
    "OrderBuilder",
    "OrderRecord",
    "PredicateConfig",
    "derive_predicate_id",
    "encode_and",
    "encode_comparison",
    "encode_condition_check",
    "encode_or",
    "encode_static_call",
    "hash_order",
    "make_order_id",
    "split_signature",
]
