"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in route modules that
need per-route limits or exemptions (@limiter.exempt on the health check).

default_limits applies GLOBAL_RATE_LIMIT to every route per client address,
on top of the login-specific SlidingWindowRateLimiter in auth/ratelimit.py.
Using a single shared instance ensures all routes share the same counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().global_rate_limit],
    storage_uri="memory://",
    headers_enabled=False,
)
