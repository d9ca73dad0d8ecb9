"""
Rate limiter shared by the application and its routers.

Set ENV=TEST or DISABLE_RATE_LIMITS=1 to disable rate limiting so tests run
cleanly in CI.
"""

import uuid
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from vault.app.config import is_test_mode


@lru_cache(maxsize=None)
def get_limiter() -> Limiter:
    """The process-wide limiter; every caller gets the same instance."""
    if is_test_mode():
        return Limiter(key_func=lambda: str(uuid.uuid4()), enabled=False)
    return Limiter(key_func=get_remote_address)
