"""
Authorization Policy

Pure decision functions, one per guarded operation. Inputs are pre-fetched
records; no function performs I/O. Every function returns a bool and the
lifecycle managers turn ``False`` into ``AccessDenied``.

Role checks go through the closed ``Role`` enumeration. ``_require_role``
rejects anything that is not a ``Role`` member so that a misspelled role
string can never pass a check.
"""

from typing import Iterable, Optional

from .models import Actor, Role, Task, Team, User


def _require_role(role) -> Role:
    if not isinstance(role, Role):
        raise TypeError(f"Expected Role, got {role!r}")
    return role


def _role_in(role, allowed: Iterable[Role]) -> bool:
    return _require_role(role) in allowed


def can_create_task(actor_role: Role) -> bool:
    return _role_in(actor_role, (Role.ADMIN, Role.MANAGER))


def can_read_task(actor: Actor, task: Task) -> bool:
    """Creator or Admin. The assignee is not granted read access."""
    return actor.id == task.created_by or _require_role(actor.role) is Role.ADMIN


def can_mutate_task(actor: Actor, task: Task) -> bool:
    """Update/delete: creator or Admin."""
    return actor.id == task.created_by or _require_role(actor.role) is Role.ADMIN


def can_assign_task(actor: Actor) -> bool:
    """
    Role gate for assignment.

    Managers additionally need ``can_manager_assign_to`` to hold for the
    target user.
    """
    return _role_in(actor.role, (Role.MANAGER, Role.ADMIN))


def can_manager_assign_to(actor: Actor, managed_teams: Iterable[Team], target_user_id: int) -> bool:
    """True if some team managed by ``actor`` lists the target as a member."""
    return any(
        team.manager_id == actor.id and target_user_id in team.members
        for team in managed_teams
    )


def can_create_team(actor_role: Role) -> bool:
    return _role_in(actor_role, (Role.ADMIN,))


def is_valid_team_manager(manager: Optional[User]) -> bool:
    """The designated manager must exist and hold the Manager role."""
    return manager is not None and _require_role(manager.role) is Role.MANAGER


def can_mutate_team(actor: Actor, team: Team) -> bool:
    """Add/remove member and delete: Admin or the team's manager."""
    return _require_role(actor.role) is Role.ADMIN or actor.id == team.manager_id


def can_read_team_analytics(actor: Actor, team: Team) -> bool:
    return actor.id in team.members or _require_role(actor.role) is Role.ADMIN


def can_manage_users(actor: Actor) -> bool:
    """List and delete users: Admin only."""
    return _require_role(actor.role) is Role.ADMIN


def has_any_role(actor: Actor, allowed: Iterable[Role]) -> bool:
    """Route-level role gate."""
    return _role_in(actor.role, tuple(allowed))
