"""
Tenant resolution for API requests.

The Supabase user id behind the bearer token is the tenant id for every
graph read and write, so every router depends on ``get_current_user_id``.
"""

# Standard library
import logging
import os
from typing import Optional

# Third-party
from fastapi import Header, HTTPException
from fastapi.concurrency import run_in_threadpool

# Local application
from supabase_client import get_supabase

logger = logging.getLogger(__name__)

DEV_USER_ID = "test-user-id-001"


def _bearer_token(authorization: Optional[str]) -> str:
    """Pull the token out of ``Authorization: Bearer <token>``."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization Header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token or " " in token:
        raise HTTPException(status_code=401, detail="Invalid Authorization Header format")
    return token


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """
    Resolve the tenant id from a Supabase JWT.

    DEV_MODE=true skips verification and returns ``DEV_USER_ID``.

    Raises:
        HTTPException: 401 for a missing, malformed or rejected token,
            500 when the Supabase client is not configured.
    """
    if os.getenv("DEV_MODE", "false").lower() == "true":
        logger.warning("DEV_MODE enabled - requests run as %s", DEV_USER_ID)
        return DEV_USER_ID

    token = _bearer_token(authorization)

    client = get_supabase()
    if client is None:
        logger.error("Cannot verify token: Supabase client not initialized")
        raise HTTPException(status_code=500, detail="Authentication service unavailable")

    try:
        user_response = await run_in_threadpool(client.auth.get_user, token)
    except Exception as e:
        logger.warning("Token verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Authentication Failed") from e

    user = getattr(user_response, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid Token")
    return user.id
