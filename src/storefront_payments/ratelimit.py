"""Rate limiting for the payment init endpoint."""

import logging
from typing import Any, Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .config import Settings
from .errors import PROBLEM_TYPE_BASE

logger = logging.getLogger(__name__)

DEFAULT_INIT_RATE_LIMIT = "10/minute"


def create_limiter(settings: Settings) -> Limiter:
    """Build the limiter for one application; counters are not shared between apps."""
    return Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def limit_init_endpoint(
    app_limiter: Limiter,
    settings: Settings,
    endpoint: Callable[..., Any],
) -> Callable[..., Any]:
    return app_limiter.limit(settings.init_rate_limit or DEFAULT_INIT_RATE_LIMIT)(endpoint)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)} on {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={
            "type": f"{PROBLEM_TYPE_BASE}/rate-limited",
            "title": "Too Many Requests",
            "status": 429,
            "detail": f"Rate limit exceeded: {exc.detail}",
            "instance": str(request.url),
        },
        media_type="application/problem+json",
    )
