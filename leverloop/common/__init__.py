from .async_utils import guarded_call, wait_with_stop
from .encoding import AccountDataError, decode_account_data
from .logging import log_event, sanitize_text, sanitize_value

__all__ = [
    "AccountDataError",
    "decode_account_data",
    "guarded_call",
    "log_event",
    "sanitize_text",
    "sanitize_value",
    "wait_with_stop",
]
