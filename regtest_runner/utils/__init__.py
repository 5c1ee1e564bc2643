from .logs import ensure_root_logging
from .retry import call_with_retries, is_transient_error

__all__ = ["call_with_retries", "ensure_root_logging", "is_transient_error"]
