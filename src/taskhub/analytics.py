"""
Analytics Engine

Derives completed/pending/overdue counts from current task state. Counts are
computed fresh on every call.

Classification (exact status match):
- Completed -> completed
- Pending with a due date before now -> overdue
- Pending otherwise -> pending
- In Progress -> not counted
"""

import logging
from datetime import datetime, time, timezone
from typing import Callable, Iterable, Optional

from . import policy
from .database import TaskDatabase
from .errors import AccessDenied, NotFound
from .models import Actor, Task, TaskAnalytics, TaskStatus

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_overdue(task: Task, now: datetime) -> bool:
    """A due date counts from midnight UTC of that day."""
    due_at = datetime.combine(task.due_date, time.min, tzinfo=timezone.utc)
    return due_at < now


def classify_tasks(tasks: Iterable[Task], now: datetime) -> TaskAnalytics:
    analytics = TaskAnalytics()
    for task in tasks:
        if task.status == TaskStatus.COMPLETED:
            analytics.completed += 1
        elif task.status == TaskStatus.PENDING:
            if is_overdue(task, now):
                analytics.overdue += 1
            else:
                analytics.pending += 1
    return analytics


class AnalyticsEngine:
    """
    Task completion analytics for a user or a team's members.

    Args:
        database: Entity store
        clock: Returns the current aware datetime; injectable for tests
    """

    def __init__(self, database: TaskDatabase, clock: Optional[Callable[[], datetime]] = None):
        self.db = database
        self.clock = clock or _utc_now

    async def get_task_analytics(self, user_id: Optional[int] = None) -> TaskAnalytics:
        """
        Counts over tasks assigned to ``user_id``, or over all tasks when no
        user is given.
        """
        if user_id is None:
            tasks = self.db.list_tasks()
        else:
            tasks = self.db.list_tasks_assigned_to([user_id])
        return classify_tasks(tasks, self.clock())

    async def get_team_task_analytics(self, team_id: int) -> TaskAnalytics:
        """
        Counts over tasks assigned to any member of the team.

        Raises:
            NotFound: If the team does not exist
        """
        team = self.db.get_team(team_id)
        if team is None:
            raise NotFound("Team", team_id)
        tasks = self.db.list_tasks_assigned_to(team.members)
        analytics = classify_tasks(tasks, self.clock())
        logger.debug(f"Team {team_id} analytics over {len(tasks)} tasks: {analytics}")
        return analytics

    async def get_team_task_analytics_for(self, actor: Actor, team_id: int) -> TaskAnalytics:
        """
        Team analytics gated on team membership (or Admin).

        Raises:
            NotFound: If the team does not exist
            AccessDenied: Unless the actor is a member of the team or Admin
        """
        team = self.db.get_team(team_id)
        if team is None:
            raise NotFound("Team", team_id)
        if not policy.can_read_team_analytics(actor, team):
            raise AccessDenied()
        return await self.get_team_task_analytics(team_id)
