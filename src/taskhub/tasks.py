"""
Task Lifecycle Manager

Orchestrates create/read/update/delete/assign of tasks: authorization gate,
then entity store mutation, then notification fan-out. Notifications are
scheduled after the store call returns and never affect the outcome.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from . import policy
from .database import TaskDatabase
from .errors import AccessDenied, NotFound, ValidationError
from .models import Actor, Role, Task, TaskFilter, TaskPriority, TaskSort, TaskStatus, TASK_SORT_FIELDS
from .notifications import (
    NotificationDispatcher,
    TASK_ASSIGNED,
    TASK_CREATED,
    TASK_DELETED,
    TASK_UPDATED,
)

logger = logging.getLogger(__name__)

EDITABLE_TASK_FIELDS = ("title", "description", "due_date", "priority", "status")


class TaskLifecycleManager:
    """
    Task operations with role- and ownership-based access control.

    Args:
        database: Entity store
        dispatcher: Notification dispatcher for state-change events
    """

    def __init__(self, database: TaskDatabase, dispatcher: NotificationDispatcher):
        self.db = database
        self.dispatcher = dispatcher

    def _load_task(self, task_id: int) -> Task:
        task = self.db.get_task(task_id)
        if task is None:
            raise NotFound("Task", task_id)
        return task

    async def create_task(self, actor: Actor, title: Optional[str] = None,
                          description: Optional[str] = None,
                          due_date: Optional[Any] = None,
                          priority: Optional[Any] = None) -> Task:
        """
        Create a task owned by ``actor``.

        The new task is Pending and unassigned; priority defaults to Low.

        Raises:
            ValidationError: If title, description or due date is missing or malformed
            AccessDenied: If the actor is neither Admin nor Manager
        """
        if not title or not description or not due_date:
            raise ValidationError("All fields are required",
                                  details={"required": ["title", "description", "due_date"]})
        parsed_due = _parse_due_date(due_date)
        parsed_priority = _parse_enum(TaskPriority, priority, "priority") if priority else TaskPriority.LOW

        if not policy.can_create_task(actor.role):
            logger.warning(f"User {actor.id} ({actor.role.value}) denied task creation")
            raise AccessDenied()

        task_id = self.db.create_task(
            title=title,
            description=description,
            due_date=parsed_due,
            created_by=actor.id,
            priority=parsed_priority,
        )
        task = self._load_task(task_id)
        logger.info(f"Task {task.id} created by user {actor.id}")

        self.dispatcher.notify(actor.id, TASK_CREATED, {
            "message": f'Task "{task.title}" created successfully.',
            "task_id": task.id,
        })
        return task

    async def list_tasks(self, task_filter: Optional[TaskFilter] = None,
                         sort: Optional[TaskSort] = None) -> List[Task]:
        """
        List tasks matching ``task_filter``, optionally sorted.

        No per-caller ownership narrowing is applied; callers restrict access
        with a role gate.
        """
        if sort is not None and sort.field not in TASK_SORT_FIELDS:
            raise ValidationError(f"Cannot sort tasks by '{sort.field}'",
                                  details={"allowed": list(TASK_SORT_FIELDS)})
        return self.db.list_tasks(task_filter, sort)

    async def get_task(self, actor: Actor, task_id: int) -> Task:
        """
        Raises:
            NotFound: If the task does not exist
            AccessDenied: Unless the actor created the task or is Admin
        """
        task = self._load_task(task_id)
        if not policy.can_read_task(actor, task):
            raise AccessDenied()
        return task

    async def update_task(self, actor: Actor, task_id: int, partial: Dict[str, Any]) -> Task:
        """
        Apply the provided fields to a task.

        Fields that are absent, None or empty leave the current value
        unchanged. Notifies the creator and, when set, the assignee.

        Raises:
            NotFound: If the task does not exist
            AccessDenied: Unless the actor created the task or is Admin
            ValidationError: On unknown fields or malformed values
        """
        task = self._load_task(task_id)
        if not policy.can_mutate_task(actor, task):
            logger.warning(f"User {actor.id} denied update of task {task_id}")
            raise AccessDenied()

        fields = _coerce_task_fields(partial)
        updated = self.db.update_task(task_id, fields)
        if updated is None:
            raise NotFound("Task", task_id)
        logger.info(f"Task {task_id} updated by user {actor.id}: {sorted(fields)}")

        self.dispatcher.notify(updated.created_by, TASK_UPDATED, {
            "message": f'Task "{updated.title}" updated successfully.',
            "task_id": updated.id,
        })
        if updated.assigned_to is not None:
            self.dispatcher.notify(updated.assigned_to, TASK_UPDATED, {
                "message": f'Task "{updated.title}" has been updated.',
                "task_id": updated.id,
            })
        return updated

    async def delete_task(self, actor: Actor, task_id: int) -> None:
        """
        Hard-delete a task. The creator is notified before the record is removed.

        Raises:
            NotFound: If the task does not exist
            AccessDenied: Unless the actor created the task or is Admin
        """
        task = self._load_task(task_id)
        if not policy.can_mutate_task(actor, task):
            logger.warning(f"User {actor.id} denied deletion of task {task_id}")
            raise AccessDenied()

        self.dispatcher.notify(task.created_by, TASK_DELETED, {
            "message": f'Task "{task.title}" has been deleted.',
            "task_id": task.id,
        })
        if not self.db.delete_task(task_id):
            raise NotFound("Task", task_id)
        logger.info(f"Task {task_id} deleted by user {actor.id}")

    async def assign_task(self, actor: Actor, task_id: int, target_user_id: int) -> Task:
        """
        Assign a task to a user.

        Managers may only assign to members of a team they manage; Admins may
        assign to anyone.

        Raises:
            NotFound: If the task or the target user does not exist
            AccessDenied: If the actor may not assign, or (Manager) the target
                is outside the actor's teams
        """
        task = self._load_task(task_id)
        if not policy.can_assign_task(actor):
            raise AccessDenied()

        if self.db.get_user(target_user_id) is None:
            raise NotFound("User", target_user_id)

        if actor.role is Role.MANAGER:
            managed = self.db.list_teams_managed_by(actor.id)
            if not policy.can_manager_assign_to(actor, managed, target_user_id):
                logger.warning(
                    f"Manager {actor.id} denied assigning task {task_id} to user {target_user_id}"
                )
                raise AccessDenied("You can only assign tasks to users in your team.")

        updated = self.db.update_task(task.id, {"assigned_to": target_user_id})
        if updated is None:
            raise NotFound("Task", task_id)
        logger.info(f"Task {task_id} assigned to user {target_user_id} by user {actor.id}")

        self.dispatcher.notify(target_user_id, TASK_ASSIGNED, {
            "message": f'You have been assigned the task: "{updated.title}".',
            "task_id": updated.id,
        })
        return updated

    async def view_assigned_tasks(self, actor: Actor) -> List[Task]:
        """All tasks currently assigned to the actor."""
        return self.db.list_tasks_assigned_to([actor.id])


def _parse_due_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError("Invalid due date", details={"due_date": str(value)})


def _parse_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise ValidationError(f"Invalid {field}", details={field: value, "allowed": allowed})


def _coerce_task_fields(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Keep provided editable fields, converted to model types."""
    unknown = set(partial) - set(EDITABLE_TASK_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

    fields: Dict[str, Any] = {}
    for name in EDITABLE_TASK_FIELDS:
        value = partial.get(name)
        if value is None or value == "":
            continue
        if name == "due_date":
            value = _parse_due_date(value)
        elif name == "priority":
            value = _parse_enum(TaskPriority, value, "priority")
        elif name == "status":
            value = _parse_enum(TaskStatus, value, "status")
        fields[name] = value
    return fields
