"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the auth router
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The limit strings are callables so they are read from Settings at request
time (LOGIN_RATE_LIMIT / RECOVERY_RATE_LIMIT) rather than frozen at import.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    return get_settings().login_rate_limit


def recovery_rate_limit() -> str:
    return get_settings().recovery_rate_limit
