"""
Team Lifecycle Manager

Create teams, add and remove members, resolve team details and delete
teams. Mutations are gated by the authorization policy and followed by a
notification fan-out to the manager and the affected members.
"""

import logging
from typing import List

from . import policy
from .database import TaskDatabase
from .errors import AccessDenied, Conflict, NotFound, ValidationError
from .models import Actor, Team, TeamDetail, UserSummary
from .notifications import (
    NotificationDispatcher,
    TEAM_CREATED,
    TEAM_DELETED,
    TEAM_MEMBER_ADDED,
    TEAM_MEMBER_REMOVED,
)

logger = logging.getLogger(__name__)


class TeamLifecycleManager:
    """
    Team operations with Admin/manager access control.

    Args:
        database: Entity store
        dispatcher: Notification dispatcher for state-change events
    """

    def __init__(self, database: TaskDatabase, dispatcher: NotificationDispatcher):
        self.db = database
        self.dispatcher = dispatcher

    def _load_team(self, team_id: int) -> Team:
        team = self.db.get_team(team_id)
        if team is None:
            raise NotFound("Team", team_id)
        return team

    async def create_team(self, actor: Actor, name: str, manager_id: int,
                          member_ids: List[int]) -> Team:
        """
        Create a team managed by ``manager_id``.

        Notifies the manager and every member (one event each).

        Raises:
            AccessDenied: Unless the actor is Admin
            ValidationError: If the name is blank, the manager is missing or not
                a Manager, or any member id does not resolve to a user
            Conflict: If a team with the same name exists
        """
        if not policy.can_create_team(actor.role):
            logger.warning(f"User {actor.id} ({actor.role.value}) denied team creation")
            raise AccessDenied()

        if not name or not name.strip():
            raise ValidationError("Team name is required")

        manager = self.db.get_user(manager_id)
        if not policy.is_valid_team_manager(manager):
            raise ValidationError("Invalid manager ID or role", details={"manager_id": manager_id})

        member_ids = list(member_ids or [])
        members = self.db.get_users_by_ids(member_ids)
        if len(members) != len(member_ids):
            missing = sorted(set(member_ids) - {m.id for m in members})
            raise ValidationError("Some members do not exist",
                                  details={"missing": missing, "requested": member_ids})

        team_id = self.db.create_team(name.strip(), manager_id, member_ids)
        team = self._load_team(team_id)
        logger.info(f"Team {team.id} '{team.name}' created by user {actor.id} "
                    f"with manager {manager_id} and {len(team.members)} members")

        self.dispatcher.notify(manager_id, TEAM_CREATED, {
            "message": f'Your team "{team.name}" has been created successfully!',
            "team_id": team.id,
        })
        self.dispatcher.notify_many(team.members, TEAM_CREATED, {
            "message": f'You have been added to the team "{team.name}"!',
            "team_id": team.id,
        })
        return team

    async def add_member(self, actor: Actor, team_id: int, member_id: int) -> Team:
        """
        Raises:
            NotFound: If the team or the user does not exist
            AccessDenied: Unless the actor is Admin or the team's manager
            Conflict: If the user is already a member
        """
        team = self._load_team(team_id)
        if not policy.can_mutate_team(actor, team):
            logger.warning(f"User {actor.id} denied adding members to team {team_id}")
            raise AccessDenied()

        if self.db.get_user(member_id) is None:
            raise NotFound("User", member_id)

        if member_id in team.members:
            raise Conflict("User is already in the team",
                           details={"team_id": team_id, "member_id": member_id})

        updated = self.db.add_team_member(team_id, member_id)
        if updated is None:
            raise NotFound("Team", team_id)
        logger.info(f"User {member_id} added to team {team_id} by user {actor.id}")

        self.dispatcher.notify(member_id, TEAM_MEMBER_ADDED, {
            "message": f'You have been added to the team "{updated.name}"!',
            "team_id": updated.id,
        })
        self.dispatcher.notify(updated.manager_id, TEAM_MEMBER_ADDED, {
            "message": f'A new member has been added to your team "{updated.name}".',
            "team_id": updated.id,
            "member_id": member_id,
        })
        return updated

    async def remove_member(self, actor: Actor, team_id: int, member_id: int) -> Team:
        """
        Remove ``member_id`` from the team. Removing a non-member succeeds
        without changing the membership.

        Raises:
            NotFound: If the team does not exist
            AccessDenied: Unless the actor is Admin or the team's manager
        """
        team = self._load_team(team_id)
        if not policy.can_mutate_team(actor, team):
            logger.warning(f"User {actor.id} denied removing members from team {team_id}")
            raise AccessDenied()

        updated = self.db.remove_team_member(team_id, member_id)
        if updated is None:
            raise NotFound("Team", team_id)
        logger.info(f"User {member_id} removed from team {team_id} by user {actor.id}")

        self.dispatcher.notify(member_id, TEAM_MEMBER_REMOVED, {
            "message": f'You have been removed from the team "{updated.name}".',
            "team_id": updated.id,
        })
        self.dispatcher.notify(updated.manager_id, TEAM_MEMBER_REMOVED, {
            "message": f'A member has been removed from your team "{updated.name}".',
            "team_id": updated.id,
            "member_id": member_id,
        })
        return updated

    async def get_team(self, team_id: int) -> TeamDetail:
        """
        Team with manager and members resolved to username/email summaries.

        Members whose user record no longer exists are omitted.
        """
        team = self._load_team(team_id)
        users = {u.id: u for u in self.db.get_users_by_ids([team.manager_id] + team.members)}
        manager = users.get(team.manager_id)
        return TeamDetail(
            id=team.id,
            name=team.name,
            manager=UserSummary.from_user(manager) if manager else None,
            members=[UserSummary.from_user(users[m]) for m in team.members if m in users],
            created_at=team.created_at,
            updated_at=team.updated_at,
        )

    async def delete_team(self, actor: Actor, team_id: int) -> None:
        """
        Hard-delete a team and notify its manager and former members.

        Raises:
            NotFound: If the team does not exist
            AccessDenied: Unless the actor is Admin or the team's manager
        """
        team = self._load_team(team_id)
        if not policy.can_mutate_team(actor, team):
            logger.warning(f"User {actor.id} denied deletion of team {team_id}")
            raise AccessDenied()

        if not self.db.delete_team(team_id):
            raise NotFound("Team", team_id)
        logger.info(f"Team {team_id} '{team.name}' deleted by user {actor.id}")

        self.dispatcher.notify(team.manager_id, TEAM_DELETED, {
            "message": f'Your team "{team.name}" has been deleted.',
            "team_id": team.id,
        })
        self.dispatcher.notify_many(team.members, TEAM_DELETED, {
            "message": f'The team "{team.name}" you were part of has been deleted.',
            "team_id": team.id,
        })
