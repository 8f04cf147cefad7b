"""
User Directory

Profile reads/updates for the authenticated user, Admin-only listing and
deletion, and administrative provisioning. Credentials stay opaque: the
password hash is stored but never interpreted or returned.
"""

import logging
import re
from typing import List, Optional

from . import policy
from .database import TaskDatabase
from .errors import AccessDenied, Conflict, NotFound, ValidationError
from .models import Actor, Role, UserProfile
from .notifications import NotificationDispatcher, PROFILE_UPDATED

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _validate_email(email: str) -> str:
    email = email.strip()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format", details={"email": email})
    return email


class UserDirectory:
    """User profile and administration operations."""

    def __init__(self, database: TaskDatabase, dispatcher: NotificationDispatcher):
        self.db = database
        self.dispatcher = dispatcher

    def create_user(self, username: str, email: str, role: Role,
                    password_hash: Optional[str] = None) -> UserProfile:
        """
        Provision a user.

        Raises:
            ValidationError: On a blank username or malformed email
            Conflict: If the email is already registered
        """
        if not username or not username.strip():
            raise ValidationError("Username is required")
        email = _validate_email(email or "")
        user_id = self.db.create_user(username.strip(), email, Role(role), password_hash)
        logger.info(f"User {user_id} created with role {Role(role).value}")
        return UserProfile.from_user(self.db.get_user(user_id))

    async def get_profile(self, actor: Actor) -> UserProfile:
        user = self.db.get_user(actor.id)
        if user is None:
            raise NotFound("User", actor.id)
        return UserProfile.from_user(user)

    async def update_profile(self, actor: Actor, username: Optional[str] = None,
                             email: Optional[str] = None) -> UserProfile:
        """
        Update the actor's username and/or email; omitted values are kept.

        Raises:
            NotFound: If the actor's record no longer exists
            ValidationError: On a malformed email
            Conflict: If the email belongs to another user
        """
        if self.db.get_user(actor.id) is None:
            raise NotFound("User", actor.id)

        fields = {}
        if username and username.strip():
            fields["username"] = username.strip()
        if email:
            fields["email"] = _validate_email(email)
            other = self.db.get_user_by_email(fields["email"])
            if other is not None and other.id != actor.id:
                raise Conflict("Email already in use", details={"email": fields["email"]})

        updated = self.db.update_user(actor.id, fields)
        if updated is None:
            raise NotFound("User", actor.id)
        logger.info(f"User {actor.id} updated profile fields {sorted(fields)}")

        self.dispatcher.notify(actor.id, PROFILE_UPDATED, {
            "message": "Your profile has been updated successfully.",
        })
        return UserProfile.from_user(updated)

    async def list_users(self, actor: Actor) -> List[UserProfile]:
        if not policy.can_manage_users(actor):
            raise AccessDenied()
        return [UserProfile.from_user(u) for u in self.db.list_users()]

    async def delete_user(self, actor: Actor, user_id: int) -> None:
        """
        Hard-delete a user. Their task assignments are cleared and they are
        removed from team member lists; tasks they created keep ``created_by``.

        Raises:
            NotFound: If the user does not exist
            AccessDenied: Unless the actor is Admin
        """
        if self.db.get_user(user_id) is None:
            raise NotFound("User", user_id)
        if not policy.can_manage_users(actor):
            raise AccessDenied("You do not have permission to delete users")
        self.db.delete_user(user_id)
        logger.info(f"User {user_id} deleted by user {actor.id}")
