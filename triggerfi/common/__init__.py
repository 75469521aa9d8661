from .async_utils import gather_limited, guarded_call
from .logging import log_event, sanitize_text, sanitize_value

__all__ = [
    "gather_limited",
    "guarded_call",
    "log_event",
    "sanitize_text",
    "sanitize_value",
]
