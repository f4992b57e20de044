"""
core/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware), api/routes/oauth.py
(/token, /register) and web/routes.py (/callback), which apply per-route
limits with @limiter.limit(). It lives in core/ because api/ and web/ may
not import from each other.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are read from Settings through callables so a test can change them
without re-importing the route modules.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def callback_limit() -> str:
    return get_settings().callback_rate_limit


def token_limit() -> str:
    return get_settings().token_rate_limit


def register_limit() -> str:
    return get_settings().register_rate_limit
