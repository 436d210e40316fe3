"""
Authentication dependency for admin remediation endpoints.

Expected header:
    X-Admin-Token: <ADMIN_API_TOKEN>
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from vibewell.config import settings


async def require_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> str:
    if not x_admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Token header"
        )

    expected_token = settings.ADMIN_API_TOKEN
    if not expected_token:
        # Admin endpoints stay closed until a token is configured
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is not configured"
        )

    if not hmac.compare_digest(x_admin_token, expected_token):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token"
        )

    return x_admin_token
