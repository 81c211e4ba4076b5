"""Per-client rate limiting for uploads."""

from fastapi import FastAPI
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

# Bulk uploads from one client: ~10/sec
UPLOAD_RATE_LIMIT = "600/minute"

limiter = Limiter(key_func=get_remote_address)


def install_limiter(app: FastAPI) -> None:
    """Attach the shared limiter and its 429 handler to app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
