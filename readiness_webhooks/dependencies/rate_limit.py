"""
Rate limit dependency for FastAPI routes.
"""
from fastapi import Depends, HTTPException, status

from readiness_webhooks.dependencies.auth import TokenPayload, get_current_user
from readiness_webhooks.logging_config import logger
from readiness_webhooks.routes.metrics import track_rate_limit_exceeded
from readiness_webhooks.services.rate_limiter import RateLimiter, rate_limiter


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


async def check_rate_limit(
    current_user: TokenPayload = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TokenPayload:
    """
    Check rate limit for the caller's organisation.

    Raises 429 if limit exceeded, otherwise passes the user through.
    """
    allowed, retry_after = await limiter.is_allowed(current_user.org_id)

    if not allowed:
        track_rate_limit_exceeded(current_user.org_id)
        logger.warning("rate_limit_exceeded", org_id=current_user.org_id, retry_after=retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )

    return current_user
