from .contracts import LiveLimitOrderProtocol, LivePredicateStore, classify_fill_revert
from .dry_run import DryRunLimitOrderProtocol, DryRunPredicateStore
from .settings import ChainConfig

__all__ = [
    "ChainConfig",
    "DryRunLimitOrderProtocol",
    "DryRunPredicateStore",
    "LiveLimitOrderProtocol",
    "LivePredicateStore",
    "classify_fill_revert",
]
