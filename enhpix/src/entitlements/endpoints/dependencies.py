"""
Endpoint Dependencies

Shared dependencies for entitlement API endpoints. The user id always comes
from a verified bearer token.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from enhpix.core.security.jwt import AuthenticatedUser, TokenError, decode_access_token
from enhpix.src.entitlements.container import EntitlementContainer

logger = logging.getLogger(__name__)


def get_container(request: Request) -> EntitlementContainer:
    """The container built by the application lifespan."""
    return request.app.state.container


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    container: EntitlementContainer = Depends(get_container),
) -> AuthenticatedUser:
    """
    Verify the bearer token and return its subject.

    This is a dependency that can be overridden in tests.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    try:
        return decode_access_token(token.strip(), container.settings)
    except TokenError as e:
        raise HTTPException(status_code=401, detail=str(e))


async def get_current_user_id(user: AuthenticatedUser = Depends(get_current_user)) -> str:
    return user.user_id


async def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
    container: EntitlementContainer = Depends(get_container),
) -> AuthenticatedUser:
    if not user.has_role(container.settings.TOKEN_ADMIN_ROLE):
        logger.warning(f"[AUTH] {user.user_id} denied admin access")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
