"""Rate limiter for login and other sensitive endpoints."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from davbox.config import Settings

LOGIN_LIMIT = "10/minute"

limiter = Limiter(key_func=get_remote_address)


def configure_limiter(settings: Settings) -> Limiter:
    """Apply settings to the shared limiter (decorators bind to it at import)."""
    limiter.enabled = settings.rate_limit_enabled
    return limiter
