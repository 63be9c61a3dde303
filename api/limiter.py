"""
api/limiter.py -- Shared slowapi rate limiter instance for the auth service.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The login limit is read from Settings on every check (callable limit value),
so LOGIN_RATE_LIMIT can be changed per environment without code changes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    return get_settings().login_rate_limit
