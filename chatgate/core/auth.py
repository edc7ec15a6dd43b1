"""
Auth utilities for the chat API.

Sessions are issued by the identity provider; here we only verify the
bearer JWT and extract the user id from its `sub` claim. Falls back to
the X-User-Id header when ALLOW_HEADER_AUTH is on (dev/tests).
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from chatgate.core.config import settings
from chatgate.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


def verify_session_jwt(token: str) -> str:
    """
    Verify a session JWT and extract user_id.

    Raises:
        AuthenticationError: invalid, expired, or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        raise AuthenticationError("Bearer tokens are not accepted: AUTH_JWT_SECRET is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=list(settings.AUTH_JWT_ALGORITHMS),
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test identity header"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Session JWT from Authorization header
    2. X-User-Id header (when ALLOW_HEADER_AUTH)
    3. Raise 401 Unauthorized

    Known users are loaded; new ids get a free-tier record.
    """
    from chatgate.features.users.service import get_or_create_user

    user_id = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_session_jwt(auth_header[7:])
    elif x_user_id and x_user_id.strip() and settings.ALLOW_HEADER_AUTH:
        user_id = x_user_id.strip()

    if not user_id:
        raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")

    get_or_create_user(user_id)
    request.state.user_id = user_id
    return user_id
