"""Rate limiting configuration.

Separated from main.py to avoid circular imports when endpoints
need to apply per-route rate limits.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100/minute"],
    enabled=get_settings().rate_limit_enabled,
)
