"""
Test suite for the task lifecycle manager.

Covers access control for each operation, field validation, the immutable
creator, manager assignment scope and the notifications emitted after each
mutation.
"""

from datetime import date, timedelta

import pytest

from taskhub.errors import AccessDenied, NotFound, ValidationError
from taskhub.models import TaskFilter, TaskPriority, TaskSort, TaskStatus
from taskhub.notifications import TASK_ASSIGNED, TASK_CREATED, TASK_DELETED, TASK_UPDATED

DUE = date(2030, 5, 1)


async def create(task_manager, actor, title="Ship release", **kwargs):
    kwargs.setdefault("description", "Cut and publish the build")
    kwargs.setdefault("due_date", DUE)
    return await task_manager.create_task(actor, title=title, **kwargs)


class TestCreateTask:

    @pytest.mark.asyncio
    async def test_manager_creates_pending_task(self, task_manager, actors, connected,
                                                dispatcher, transport):
        task = await create(task_manager, actors["manager"], priority="High")

        assert task.created_by == actors["manager"].id
        assert task.status is TaskStatus.PENDING
        assert task.priority is TaskPriority.HIGH
        assert task.assigned_to is None

        await dispatcher.drain()
        assert transport.events_for(connected["manager"]) == [TASK_CREATED]
        _, payload = transport.events(TASK_CREATED)[0]
        assert payload["task_id"] == task.id
        assert "Ship release" in payload["message"]

    @pytest.mark.asyncio
    async def test_priority_defaults_to_low(self, task_manager, actors):
        task = await create(task_manager, actors["admin"])
        assert task.priority is TaskPriority.LOW

    @pytest.mark.asyncio
    async def test_due_date_accepts_iso_string(self, task_manager, actors):
        task = await create(task_manager, actors["admin"], due_date="2031-02-03")
        assert task.due_date == date(2031, 2, 3)

    @pytest.mark.asyncio
    async def test_user_role_denied(self, task_manager, actors, db):
        with pytest.raises(AccessDenied):
            await create(task_manager, actors["alice"])
        assert db.list_tasks() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["title", "description", "due_date"])
    async def test_missing_required_field(self, task_manager, actors, missing):
        fields = {"title": "T", "description": "D", "due_date": DUE}
        fields[missing] = None
        with pytest.raises(ValidationError, match="All fields are required"):
            await task_manager.create_task(actors["manager"], **fields)

    @pytest.mark.asyncio
    async def test_validation_checked_before_role(self, task_manager, actors):
        with pytest.raises(ValidationError):
            await task_manager.create_task(actors["alice"], title="T", description="", due_date=DUE)

    @pytest.mark.asyncio
    async def test_invalid_values(self, task_manager, actors):
        with pytest.raises(ValidationError):
            await create(task_manager, actors["manager"], due_date="next tuesday")
        with pytest.raises(ValidationError):
            await create(task_manager, actors["manager"], priority="Urgent")

    @pytest.mark.asyncio
    async def test_no_channel_does_not_fail(self, task_manager, actors, dispatcher, transport, monitor):
        task = await create(task_manager, actors["manager"])
        await dispatcher.drain()

        assert task.id is not None
        assert transport.sent == []
        assert monitor.daily_stats["notifications_dropped"] == 1


class TestReadTasks:

    @pytest.mark.asyncio
    async def test_get_task_access(self, task_manager, actors):
        task = await create(task_manager, actors["manager"])

        assert (await task_manager.get_task(actors["manager"], task.id)).id == task.id
        assert (await task_manager.get_task(actors["admin"], task.id)).id == task.id
        with pytest.raises(AccessDenied):
            await task_manager.get_task(actors["manager2"], task.id)

    @pytest.mark.asyncio
    async def test_assignee_cannot_read(self, task_manager, team_manager, actors, users):
        await team_manager.create_team(actors["admin"], "Eng", users["manager"], [users["alice"]])
        task = await create(task_manager, actors["manager"])
        await task_manager.assign_task(actors["manager"], task.id, users["alice"])

        with pytest.raises(AccessDenied):
            await task_manager.get_task(actors["alice"], task.id)

    @pytest.mark.asyncio
    async def test_get_missing_task(self, task_manager, actors):
        with pytest.raises(NotFound):
            await task_manager.get_task(actors["admin"], 12345)

    @pytest.mark.asyncio
    async def test_list_tasks_filter_and_sort(self, task_manager, actors):
        a = await create(task_manager, actors["manager"], title="B task", due_date=DUE + timedelta(days=3))
        b = await create(task_manager, actors["manager2"], title="A task", due_date=DUE)
        await task_manager.update_task(actors["manager"], a.id, {"status": "Completed"})

        everything = await task_manager.list_tasks()
        assert [t.id for t in everything] == [a.id, b.id]

        pending = await task_manager.list_tasks(TaskFilter(status=TaskStatus.PENDING))
        assert [t.id for t in pending] == [b.id]

        by_title = await task_manager.list_tasks(sort=TaskSort(field="title"))
        assert [t.id for t in by_title] == [b.id, a.id]

    @pytest.mark.asyncio
    async def test_list_tasks_bad_sort_field(self, task_manager):
        with pytest.raises(ValidationError):
            await task_manager.list_tasks(sort=TaskSort(field="password_hash"))

    @pytest.mark.asyncio
    async def test_view_assigned_tasks(self, task_manager, actors, users):
        first = await create(task_manager, actors["admin"])
        await create(task_manager, actors["admin"])
        await task_manager.assign_task(actors["admin"], first.id, users["bob"])

        assigned = await task_manager.view_assigned_tasks(actors["bob"])
        assert [t.id for t in assigned] == [first.id]
        assert await task_manager.view_assigned_tasks(actors["alice"]) == []


class TestUpdateTask:

    @pytest.mark.asyncio
    async def test_partial_update(self, task_manager, actors):
        task = await create(task_manager, actors["manager"])
        updated = await task_manager.update_task(actors["manager"], task.id, {
            "status": "In Progress",
            "title": "",
            "description": None,
        })

        assert updated.status is TaskStatus.IN_PROGRESS
        assert updated.title == task.title
        assert updated.description == task.description

    @pytest.mark.asyncio
    async def test_empty_partial_changes_only_updated_at(self, task_manager, actors):
        task = await create(task_manager, actors["manager"])
        updated = await task_manager.update_task(actors["manager"], task.id, {})

        assert updated.model_dump(exclude={"updated_at"}) == task.model_dump(exclude={"updated_at"})
        assert updated.updated_at >= task.updated_at

    @pytest.mark.asyncio
    async def test_created_by_never_changes(self, task_manager, actors):
        task = await create(task_manager, actors["manager"])
        for partial in ({"title": "x"}, {"status": "Completed"}, {}, {"priority": "Medium"}):
            updated = await task_manager.update_task(actors["admin"], task.id, partial)
            assert updated.created_by == actors["manager"].id

        with pytest.raises(ValidationError):
            await task_manager.update_task(actors["admin"], task.id, {"created_by": actors["admin"].id})

    @pytest.mark.asyncio
    async def test_update_denied_for_other_manager(self, task_manager, actors):
        task = await create(task_manager, actors["manager"])
        with pytest.raises(AccessDenied):
            await task_manager.update_task(actors["manager2"], task.id, {"title": "mine now"})

    @pytest.mark.asyncio
    async def test_update_missing_task(self, task_manager, actors):
        with pytest.raises(NotFound):
            await task_manager.update_task(actors["admin"], 999, {"title": "x"})

    @pytest.mark.asyncio
    async def test_update_invalid_status(self, task_manager, actors):
        task = await create(task_manager, actors["manager"])
        with pytest.raises(ValidationError):
            await task_manager.update_task(actors["manager"], task.id, {"status": "Done"})

    @pytest.mark.asyncio
    async def test_update_notifies_creator_and_assignee(self, task_manager, team_manager, actors,
                                                        users, connected, dispatcher, transport):
        await team_manager.create_team(actors["admin"], "Eng", users["manager"], [users["alice"]])
        task = await create(task_manager, actors["manager"])
        await task_manager.assign_task(actors["manager"], task.id, users["alice"])
        await dispatcher.drain()
        transport.sent.clear()

        await task_manager.update_task(actors["admin"], task.id, {"priority": "High"})
        await dispatcher.drain()

        recipients = sorted(h for h, _ in transport.events(TASK_UPDATED))
        assert recipients == sorted([connected["manager"], connected["alice"]])
        assert transport.events_for(connected["admin"]) == []


class TestDeleteTask:

    @pytest.mark.asyncio
    async def test_admin_deletes_and_creator_notified(self, task_manager, actors, connected,
                                                      dispatcher, transport, db):
        task = await create(task_manager, actors["manager"])
        await dispatcher.drain()
        transport.sent.clear()

        await task_manager.delete_task(actors["admin"], task.id)
        await dispatcher.drain()

        assert db.get_task(task.id) is None
        assert [h for h, _ in transport.events(TASK_DELETED)] == [connected["manager"]]

    @pytest.mark.asyncio
    async def test_delete_denied(self, task_manager, actors, db):
        task = await create(task_manager, actors["manager"])
        with pytest.raises(AccessDenied):
            await task_manager.delete_task(actors["alice"], task.id)
        assert db.get_task(task.id) is not None

    @pytest.mark.asyncio
    async def test_delete_missing(self, task_manager, actors):
        with pytest.raises(NotFound):
            await task_manager.delete_task(actors["admin"], 77)


class TestAssignTask:

    @pytest.mark.asyncio
    async def test_manager_assigns_within_team(self, task_manager, team_manager, actors, users,
                                               connected, dispatcher, transport):
        await team_manager.create_team(actors["admin"], "Eng", users["manager"], [users["alice"]])
        task = await create(task_manager, actors["manager"])

        assigned = await task_manager.assign_task(actors["manager"], task.id, users["alice"])
        await dispatcher.drain()

        assert assigned.assigned_to == users["alice"]
        events = transport.events(TASK_ASSIGNED)
        assert [h for h, _ in events] == [connected["alice"]]
        assert "Ship release" in events[0][1]["message"]

    @pytest.mark.asyncio
    async def test_manager_outside_team_denied(self, task_manager, team_manager, actors, users, db):
        await team_manager.create_team(actors["admin"], "Eng", users["manager"], [users["alice"]])
        task = await create(task_manager, actors["manager2"])

        with pytest.raises(AccessDenied, match="your team"):
            await task_manager.assign_task(actors["manager2"], task.id, users["alice"])
        assert db.get_task(task.id).assigned_to is None

    @pytest.mark.asyncio
    async def test_manager_any_managed_team_counts(self, task_manager, team_manager, actors, users):
        await team_manager.create_team(actors["admin"], "Eng", users["manager"], [users["alice"]])
        await team_manager.create_team(actors["admin"], "Ops", users["manager"], [users["carol"]])
        task = await create(task_manager, actors["manager"])

        assigned = await task_manager.assign_task(actors["manager"], task.id, users["carol"])
        assert assigned.assigned_to == users["carol"]

    @pytest.mark.asyncio
    async def test_admin_assigns_anyone(self, task_manager, actors, users):
        task = await create(task_manager, actors["manager"])
        assigned = await task_manager.assign_task(actors["admin"], task.id, users["bob"])
        assert assigned.assigned_to == users["bob"]

    @pytest.mark.asyncio
    async def test_user_role_cannot_assign(self, task_manager, actors, users):
        task = await create(task_manager, actors["manager"])
        with pytest.raises(AccessDenied):
            await task_manager.assign_task(actors["alice"], task.id, users["bob"])

    @pytest.mark.asyncio
    async def test_missing_task_or_user(self, task_manager, actors, users):
        with pytest.raises(NotFound):
            await task_manager.assign_task(actors["admin"], 999, users["bob"])

        task = await create(task_manager, actors["manager"])
        with pytest.raises(NotFound):
            await task_manager.assign_task(actors["admin"], task.id, 999)
