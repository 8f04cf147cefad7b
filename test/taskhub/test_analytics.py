"""
Tests for task analytics classification and team scoping.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from taskhub.analytics import AnalyticsEngine, classify_tasks, is_overdue
from taskhub.errors import AccessDenied, NotFound
from taskhub.models import Task, TaskAnalytics, TaskStatus

NOW = datetime(2030, 6, 15, 12, 0, tzinfo=timezone.utc)


def seed(db, creator, assignee, status, due):
    task_id = db.create_task(title="t", description="d", due_date=due, created_by=creator)
    db.update_task(task_id, {"status": status, "assigned_to": assignee})
    return task_id


@pytest.fixture
def engine(db):
    return AnalyticsEngine(db, clock=lambda: NOW)


class TestClassification:

    def _task(self, status, due):
        return Task(id=1, title="t", description="d", due_date=due, status=status,
                    created_by=1, created_at=NOW, updated_at=NOW)

    def test_due_today_is_overdue_after_midnight(self):
        assert is_overdue(self._task(TaskStatus.PENDING, NOW.date()), NOW)
        assert not is_overdue(self._task(TaskStatus.PENDING, NOW.date() + timedelta(days=1)), NOW)

    def test_in_progress_is_not_counted(self):
        tasks = [
            self._task(TaskStatus.IN_PROGRESS, date(2000, 1, 1)),
            self._task(TaskStatus.IN_PROGRESS, date(2100, 1, 1)),
        ]
        assert classify_tasks(tasks, NOW) == TaskAnalytics(completed=0, pending=0, overdue=0)

    def test_completed_past_due_counts_as_completed(self):
        tasks = [self._task(TaskStatus.COMPLETED, date(2000, 1, 1))]
        assert classify_tasks(tasks, NOW).completed == 1


class TestUserAnalytics:

    @pytest.mark.asyncio
    async def test_two_completed_one_pending_one_overdue(self, engine, db, users):
        alice = users["alice"]
        seed(db, users["manager"], alice, "Completed", date(2030, 1, 1))
        seed(db, users["manager"], alice, "Completed", date(2031, 1, 1))
        seed(db, users["manager"], alice, "Pending", date(2030, 6, 1))
        seed(db, users["manager"], alice, "Pending", date(2030, 7, 1))
        seed(db, users["manager"], users["bob"], "Completed", date(2030, 1, 1))

        result = await engine.get_task_analytics(alice)
        assert result == TaskAnalytics(completed=2, pending=1, overdue=1)

    @pytest.mark.asyncio
    async def test_without_user_counts_all_tasks(self, engine, db, users):
        seed(db, users["manager"], users["alice"], "Completed", date(2030, 1, 1))
        seed(db, users["manager"], users["bob"], "Pending", date(2031, 1, 1))
        db.create_task(title="u", description="d", due_date=date(2030, 1, 1), created_by=users["admin"])

        result = await engine.get_task_analytics()
        assert result == TaskAnalytics(completed=1, pending=1, overdue=1)

    @pytest.mark.asyncio
    async def test_user_without_tasks(self, engine, users):
        assert await engine.get_task_analytics(users["carol"]) == TaskAnalytics()


class TestTeamAnalytics:

    @pytest.fixture
    def team_id(self, db, users):
        return db.create_team("Eng", users["manager"], [users["alice"], users["bob"]])

    @pytest.mark.asyncio
    async def test_counts_tasks_of_all_members(self, engine, db, users, team_id):
        seed(db, users["manager"], users["alice"], "Completed", date(2030, 1, 1))
        seed(db, users["manager"], users["bob"], "Pending", date(2030, 1, 1))
        seed(db, users["manager"], users["carol"], "Pending", date(2031, 1, 1))

        result = await engine.get_team_task_analytics(team_id)
        assert result == TaskAnalytics(completed=1, pending=0, overdue=1)

    @pytest.mark.asyncio
    async def test_missing_team(self, engine):
        with pytest.raises(NotFound):
            await engine.get_team_task_analytics(42)

    @pytest.mark.asyncio
    async def test_member_and_admin_may_read(self, engine, actors, team_id):
        await engine.get_team_task_analytics_for(actors["alice"], team_id)
        await engine.get_team_task_analytics_for(actors["admin"], team_id)

    @pytest.mark.asyncio
    async def test_non_member_denied(self, engine, actors, team_id):
        with pytest.raises(AccessDenied):
            await engine.get_team_task_analytics_for(actors["carol"], team_id)
        with pytest.raises(AccessDenied):
            await engine.get_team_task_analytics_for(actors["manager"], team_id)
