"""
Shared utility functions for the backend.

Helpers that need the services layer (errors) are imported from
their modules directly; models itself imports utils.clock.
"""
from .clock import utc_now, as_utc
from .rate_limiter import check_user_rate_limit, RATE_LIMITS, clear_rate_limits

__all__ = [
    "utc_now",
    "as_utc",
    "check_user_rate_limit",
    "RATE_LIMITS",
    "clear_rate_limits",
]
