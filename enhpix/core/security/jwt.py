"""
Bearer token handling.

Tokens are issued by the authentication service (out of scope here); this
module only verifies them and extracts the subject. Entitlement-mutating
routes take the user id from here and nowhere else.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from enhpix.core.conf import Settings

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a bearer token cannot be trusted."""


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity derived from a verified token."""
    user_id: str
    role: Optional[str] = None
    email: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return self.role == role


def create_access_token(
    user_id: str,
    settings: Settings,
    role: Optional[str] = None,
    email: Optional[str] = None,
    expires_in: int = 3600,
) -> str:
    """Sign a token for `user_id`. Used by internal tooling and tests."""
    now = datetime.now(timezone.utc)
    claims = {
        'sub': user_id,
        'iat': now,
        'exp': now + timedelta(seconds=expires_in),
    }
    if role:
        claims['role'] = role
    if email:
        claims['email'] = email
    return jwt.encode(claims, settings.TOKEN_SECRET_KEY, algorithm=settings.TOKEN_ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> AuthenticatedUser:
    """
    Verify signature and expiry and return the subject.

    Raises:
        TokenError: If the token is malformed, expired, badly signed or has no subject
    """
    try:
        claims = jwt.decode(
            token,
            settings.TOKEN_SECRET_KEY,
            algorithms=[settings.TOKEN_ALGORITHM],
            options={'require': ['sub', 'exp']},
        )
    except jwt.ExpiredSignatureError as e:
        raise TokenError('Token expired') from e
    except jwt.InvalidTokenError as e:
        logger.warning(f"[AUTH] Invalid token: {e}")
        raise TokenError('Invalid token') from e

    user_id = claims.get('sub')
    if not user_id:
        raise TokenError('Token has no subject')

    return AuthenticatedUser(
        user_id=str(user_id),
        role=claims.get('role'),
        email=claims.get('email'),
    )
