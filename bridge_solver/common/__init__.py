from .async_utils import guarded_call, wait_with_stop
from .logging import log_event
from .retry import RetryPolicy

__all__ = [
    "RetryPolicy",
    "guarded_call",
    "log_event",
    "wait_with_stop",
]
