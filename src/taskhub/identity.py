"""
Identity Context adapter.

Resolves a bearer JWT into an ``Actor``. The token carries the user id as
``sub``; the role is always taken from the stored user record.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .config import Settings
from .database import TaskDatabase
from .errors import Unauthenticated
from .models import Actor, User

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization[7:].strip()
    return token or None


class IdentityProvider:
    """
    Verifies access tokens and maps them to actors.

    Args:
        database: Entity store used to confirm the user still exists
        settings: JWT secret, algorithm and expiry
    """

    def __init__(self, database: TaskDatabase, settings: Settings):
        self.db = database
        self.settings = settings

    def issue_token(self, user: User, expires_in: Optional[timedelta] = None) -> str:
        """Sign an access token for ``user``."""
        now = datetime.now(timezone.utc)
        expiry = expires_in or timedelta(minutes=self.settings.jwt_expiry_minutes)
        claims = {
            "sub": str(user.id),
            "role": user.role.value,
            "iat": now,
            "exp": now + expiry,
        }
        return jwt.encode(claims, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def decode(self, token: str) -> dict:
        """
        Verify signature and expiry.

        Raises:
            Unauthenticated: If the token is invalid or expired
        """
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"Invalid bearer token: {e}")
            raise Unauthenticated("Invalid token")

    def resolve(self, token: Optional[str]) -> Actor:
        """
        Resolve a raw token to the acting user.

        Raises:
            Unauthenticated: If the token is missing or invalid, or the user
                no longer exists
        """
        if not token:
            raise Unauthenticated("No token provided")
        claims = self.decode(token)
        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError):
            raise Unauthenticated("Invalid token subject")

        user = self.db.get_user(user_id)
        if user is None:
            raise Unauthenticated("User does not exist")
        return user.as_actor()
