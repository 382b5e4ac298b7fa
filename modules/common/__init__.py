from .async_utils import bounded, guarded_call
from .logging import log_event, sanitize_text

__all__ = [
    "bounded",
    "guarded_call",
    "log_event",
    "sanitize_text",
]
