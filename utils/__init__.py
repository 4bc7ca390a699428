"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, from_timestamp
from utils.user_context import (
    current_request_context,
    set_request_context,
    clear_request_context,
)
