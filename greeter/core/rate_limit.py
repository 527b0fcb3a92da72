"""Rate limiting configuration using SlowAPI."""

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

# Create limiter with IP-based key function
limiter = Limiter(key_func=get_remote_address)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Return the standard error body when a client exceeds its limit."""
    return JSONResponse(
        status_code=429,
        content={"code": "rate_limited", "message": "Too many requests. Please try again later."},
    )
