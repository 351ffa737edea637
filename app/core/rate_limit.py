"""
Rate limiting module for FastAPI application.

Coarse per-IP limits for the registration, unlock-email and OAuth entry
points. Login is not limited here: repeated failed logins are blocked by the
login-attempt ledger instead.
"""

import os
import time
from typing import Dict, Any
from collections import defaultdict, deque
from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.core.error_handling import AuthFlowError
from app.core.logging import get_client_ip
from app.core.settings import settings
import logging

logger = logging.getLogger(__name__)

# In-memory rate limiting storage (for development/simple deployments)
_rate_limit_store: Dict[str, deque] = defaultdict(deque)


def get_rate_limit_key(request: Request, endpoint: str = "") -> str:
    """Combine the client IP with the endpoint type."""
    client_ip = get_client_ip(request)
    if endpoint:
        return f"rate_limit:{endpoint}:{client_ip}"
    return f"rate_limit:general:{client_ip}"


def _rate_limiting_disabled() -> bool:
    return (
        os.environ.get('TESTING', '').lower() in ('1', 'true', 'yes')
        or not settings.rate_limit_enabled
    )


if _rate_limiting_disabled():
    limiter = Limiter(
        key_func=get_remote_address,
        enabled=False
    )
    logger.info("Rate limiter disabled")
elif settings.REDIS_URL:
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri=settings.REDIS_URL,
        default_limits=["1000 per day", "100 per hour"]
    )
    logger.info(f"Rate limiter initialized with Redis backend: {settings.REDIS_URL}")
else:
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=["1000 per day", "100 per hour"]
    )
    logger.info("Rate limiter initialized with in-memory backend")


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    client_ip = get_client_ip(request)
    logger.warning(f"Rate limit exceeded for {client_ip} on {request.url.path}")
    retry_after = 60

    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "message": "Too many requests. Please try again later.",
            "detail": str(getattr(exc, 'detail', 'Rate limit exceeded')),
            "retryAfter": retry_after
        }
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


ENDPOINT_LIMITS = {
    "register": ("REGISTER_RATE_LIMIT_PER_IP", "REGISTER_RATE_LIMIT_WINDOW"),
    "unlock_email": ("UNLOCK_EMAIL_RATE_LIMIT_PER_IP", "UNLOCK_EMAIL_RATE_LIMIT_WINDOW"),
    "oauth": ("OAUTH_RATE_LIMIT_PER_IP", "OAUTH_RATE_LIMIT_WINDOW"),
    "password_reset": ("PASSWORD_RESET_RATE_LIMIT_PER_IP", "PASSWORD_RESET_RATE_LIMIT_WINDOW"),
    "login_otp": ("LOGIN_OTP_RATE_LIMIT_PER_IP", "LOGIN_OTP_RATE_LIMIT_WINDOW"),
}


class RateLimitManager:
    """
    In-memory sliding window rate limiter keyed by endpoint type and client IP.
    """

    def __init__(self):
        self.store = _rate_limit_store

    def check_rate_limit(self, key: str, limit: int, window: int) -> Dict[str, Any]:
        """
        Check if request is within rate limit using sliding window.

        Args:
            key: Unique identifier for rate limiting
            limit: Maximum number of requests allowed
            window: Time window in seconds

        Returns:
            Dict with rate limit status and metadata
        """
        current_time = time.time()
        request_queue = self.store[key]

        while request_queue and request_queue[0] <= current_time - window:
            request_queue.popleft()

        current_count = len(request_queue)

        if current_count >= limit:
            if request_queue:
                reset_time = int(request_queue[0] + window)
                retry_after = max(1, reset_time - int(current_time))
            else:
                retry_after = window
                reset_time = int(current_time + window)

            logger.warning(
                f"Rate limit exceeded for key {key}: "
                f"{current_count}/{limit} requests in {window}s window"
            )
            return {
                "allowed": False,
                "current_count": current_count,
                "limit": limit,
                "window": window,
                "retry_after": retry_after,
                "reset_time": reset_time
            }

        request_queue.append(current_time)

        return {
            "allowed": True,
            "current_count": current_count + 1,
            "limit": limit,
            "window": window,
            "remaining": limit - (current_count + 1),
            "reset_time": int(current_time + window)
        }

    def check_endpoint_rate_limit(self, request: Request, endpoint_type: str) -> None:
        """
        Raises a 429 AuthFlowError if the client exceeded the endpoint limit.
        """
        if _rate_limiting_disabled():
            return

        limit_name, window_name = ENDPOINT_LIMITS.get(
            endpoint_type,
            ("DEFAULT_AUTH_RATE_LIMIT_PER_IP", "DEFAULT_AUTH_RATE_LIMIT_WINDOW"),
        )
        limit = getattr(settings, limit_name)
        window = getattr(settings, window_name)

        result = self.check_rate_limit(get_rate_limit_key(request, endpoint_type), limit, window)

        if not result["allowed"]:
            raise AuthFlowError(
                "Too many requests. Please try again later.",
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                extra={"retryAfter": result["retry_after"]},
                headers={"Retry-After": str(result["retry_after"])},
            )


# Global rate limit manager instance
rate_limit_manager = RateLimitManager()


def rate_limit(endpoint_type: str):
    """
    Route dependency applying the per-IP limit for endpoint_type.

    Usage:
        @router.post("/register", dependencies=[Depends(rate_limit("register"))])
    """
    def dependency(request: Request) -> None:
        rate_limit_manager.check_endpoint_rate_limit(request, endpoint_type)

    return dependency


def setup_rate_limiting(app):
    """Setup rate limiting middleware for FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    logger.info("Rate limiting middleware configured successfully")


def cleanup_rate_limiting():
    """Cleanup rate limiting resources."""
    _rate_limit_store.clear()
    logger.info("Rate limiting cleanup completed")
