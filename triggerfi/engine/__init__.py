from .fees import FeeQuoter, NativePriceSource
from .keeper import KeeperService
from .orders import OrderService
from .taker import FillOrchestrator

__all__ = [
    "FeeQuoter",
    "FillOrchestrator",
    "KeeperService",
    "NativePriceSource",
    "OrderService",
]
