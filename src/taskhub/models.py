"""
Pydantic models for TaskHub entities and API request/response validation.

Provides the closed role/status/priority enumerations, the Task/Team/User
records exchanged with the entity store, query objects for task listing,
and the request/response bodies of the HTTP boundary.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    """Closed set of user roles."""

    ADMIN = "Admin"
    MANAGER = "Manager"
    USER = "User"


class TaskStatus(str, Enum):
    """Task workflow status; values match the stored strings exactly."""

    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


class TaskPriority(str, Enum):
    """Task priority levels."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# Columns a task listing may be sorted by
TASK_SORT_FIELDS = (
    "id",
    "title",
    "description",
    "due_date",
    "priority",
    "status",
    "created_by",
    "assigned_to",
    "created_at",
    "updated_at",
)


class Actor(BaseModel):
    """Authenticated identity performing an operation."""

    model_config = ConfigDict(frozen=True)

    id: int
    role: Role


class User(BaseModel):
    """User record as held by the entity store."""

    id: int
    username: str
    email: str
    role: Role
    password_hash: Optional[str] = Field(default=None, exclude=True)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role)


class UserSummary(BaseModel):
    """Display-safe view of a user (no role, no credentials)."""

    id: int
    username: str
    email: str

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(id=user.id, username=user.username, email=user.email)


class UserProfile(UserSummary):
    """Display-safe view of a user including the role."""

    role: Role

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(id=user.id, username=user.username, email=user.email, role=user.role)


class Task(BaseModel):
    """Task record."""

    id: int
    title: str
    description: str
    due_date: date
    priority: TaskPriority = TaskPriority.LOW
    status: TaskStatus = TaskStatus.PENDING
    created_by: int
    assigned_to: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class Team(BaseModel):
    """Team record; ``members`` keeps insertion order for display."""

    id: int
    name: str
    manager_id: int
    members: List[int] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TeamDetail(BaseModel):
    """Team with manager and members resolved to display-safe summaries."""

    id: int
    name: str
    manager: Optional[UserSummary] = None
    members: List[UserSummary] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TaskAnalytics(BaseModel):
    """Completion counts derived from current task state."""

    completed: int = 0
    pending: int = 0
    overdue: int = 0


class TaskFilter(BaseModel):
    """Filter for task listings. Date bounds are inclusive."""

    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    title: Optional[str] = None
    due_from: Optional[date] = None
    due_to: Optional[date] = None


class TaskSort(BaseModel):
    """Single-field sort for task listings."""

    field: str
    descending: bool = False


# Request models


def _date_part(value: Any) -> Any:
    """Reduce a datetime (object or ISO string with a time part) to its date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10 and value[10] in "T ":
        return value[:10]
    return value


class TaskCreateRequest(BaseModel):
    """Request body for task creation. Required fields are checked by the manager."""

    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    priority: Optional[TaskPriority] = None
    # Accepted for compatibility; new tasks always start Pending
    status: Optional[TaskStatus] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def truncate_due_date(cls, v):
        return _date_part(v)


class TaskUpdateRequest(BaseModel):
    """Request body for task updates; absent fields are left unchanged."""

    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def truncate_due_date(cls, v):
        return _date_part(v)


class TaskAssignRequest(BaseModel):
    """Request body for assigning a task."""

    user_id: int


class TeamCreateRequest(BaseModel):
    """Request body for team creation."""

    name: str = Field(min_length=1, max_length=200)
    manager_id: int
    member_ids: List[int] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Team name cannot be empty")
        return v.strip()


class TeamMemberRequest(BaseModel):
    """Request body for adding or removing a team member."""

    team_id: int
    member_id: int


class ProfileUpdateRequest(BaseModel):
    """Request body for profile updates."""

    username: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=254)


# Response models


class TaskResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    task: Task


class TaskListResponse(BaseModel):
    success: bool = True
    tasks: List[Task]


class TeamResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    team: Team


class TeamDetailResponse(BaseModel):
    success: bool = True
    team: TeamDetail


class AnalyticsResponse(BaseModel):
    success: bool = True
    message: str
    data: TaskAnalytics


class ProfileResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    user: UserProfile


class UserListResponse(BaseModel):
    success: bool = True
    users: List[UserProfile]


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    error: str
    details: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    database_connected: bool
    connected_users: int
    timestamp: str


class MetricsResponse(BaseModel):
    """Response model for performance metrics endpoint."""

    connections: Dict[str, Any]
    entities: Dict[str, Any]
    performance: Dict[str, Any]
    notifications: Dict[str, Any]
    system: Dict[str, Any]
