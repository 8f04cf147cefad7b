"""
FastAPI Backend with WebSocket notifications for TaskHub

Provides the REST endpoints for tasks, teams, analytics and user profiles,
plus the ``/ws/notifications`` channel that authenticated clients register on
to receive per-user events. Domain errors raised by the managers are mapped
to HTTP responses by a single exception handler.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__, policy
from .analytics import AnalyticsEngine
from .config import Settings
from .database import TaskDatabase
from .errors import AccessDenied, DependencyFailure, TaskHubError, Unauthenticated, ValidationError
from .identity import IdentityProvider, extract_bearer_token
from .models import (
    Actor,
    AnalyticsResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MetricsResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    Role,
    TaskAssignRequest,
    TaskCreateRequest,
    TaskFilter,
    TaskListResponse,
    TaskPriority,
    TaskResponse,
    TaskSort,
    TaskStatus,
    TaskUpdateRequest,
    TeamCreateRequest,
    TeamDetailResponse,
    TeamMemberRequest,
    TeamResponse,
    UserListResponse,
)
from .monitoring import performance_monitor
from .notifications import ChannelRegistry, NotificationDispatcher, WebSocketTransport
from .tasks import TaskLifecycleManager
from .teams import TeamLifecycleManager
from .users import UserDirectory

logger = logging.getLogger(__name__)


def _build_services(app: FastAPI, settings: Settings) -> None:
    """Wire the store, registry, dispatcher and managers onto ``app.state``."""
    db = TaskDatabase(settings.database_path)
    registry = ChannelRegistry()
    dispatcher = NotificationDispatcher(registry, WebSocketTransport(), performance_monitor)

    app.state.db = db
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.identity = IdentityProvider(db, settings)
    app.state.tasks = TaskLifecycleManager(db, dispatcher)
    app.state.teams = TeamLifecycleManager(db, dispatcher)
    app.state.analytics = AnalyticsEngine(db)
    app.state.users = UserDirectory(db, dispatcher)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the TaskHub application.

    Args:
        settings: Service settings; read from the environment when omitted

    Returns:
        FastAPI: Application whose services are created in the lifespan
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            _build_services(app, settings)
            logger.info(f"Database initialized at {settings.database_path}")
            logger.info("TaskHub API ready")
            logger.info("  WebSocket /ws/notifications - per-user event stream")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        yield

        await app.state.dispatcher.drain()
        app.state.registry.clear()
        app.state.db.close()
        logger.info("Database connection closed")

    app = FastAPI(
        title="TaskHub API",
        description="Multi-tenant task and team management with real-time notifications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)
    _register_routes(app)
    return app


def _error_response(status_code: int, error: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(TaskHubError)
    async def taskhub_error_handler(request: Request, exc: TaskHubError):
        if isinstance(exc, DependencyFailure):
            logger.error(f"{request.method} {request.url.path} failed in {exc.operation}")
            return _error_response(exc.status_code, "Internal server error")
        return _error_response(exc.status_code, exc.message, exc.details or None)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        return _error_response(500, "Internal server error")


# Dependencies


def get_actor(request: Request, authorization: Optional[str] = Header(default=None)) -> Actor:
    """Resolve the bearer token on the request to an actor."""
    token = extract_bearer_token(authorization)
    return request.app.state.identity.resolve(token)


def require_roles(*roles: Role) -> Callable[..., Actor]:
    """Dependency that admits only actors holding one of ``roles``."""

    def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if not policy.has_any_role(actor, roles):
            logger.warning(f"User {actor.id} ({actor.role.value}) denied; requires {[r.value for r in roles]}")
            raise AccessDenied()
        return actor

    return dependency


def _frame(event: str, data: Dict[str, Any]) -> str:
    return json.dumps({
        "event": event,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


def _register_routes(app: FastAPI) -> None:
    managers = require_roles(Role.ADMIN, Role.MANAGER)
    admins = require_roles(Role.ADMIN)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check(request: Request):
        """Service health including store connectivity and live channels."""
        database_connected = True
        try:
            request.app.state.db.count_entities()
        except DependencyFailure as e:
            logger.error(f"Database health check failed: {e.operation}")
            database_connected = False

        return HealthResponse(
            status="healthy" if database_connected else "degraded",
            database_connected=database_connected,
            connected_users=request.app.state.registry.count(),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/api/metrics", response_model=MetricsResponse)
    async def get_performance_metrics(request: Request, actor: Actor = Depends(admins)):
        state = request.app.state
        metrics = performance_monitor.get_system_metrics(state.registry, state.db)
        return MetricsResponse(
            connections={
                "connected_users": metrics.connected_users,
                "pending_deliveries": state.dispatcher.pending_count(),
            },
            entities={
                "users": metrics.total_users,
                "teams": metrics.total_teams,
                "tasks": metrics.total_tasks,
            },
            performance={
                "avg_query_time_ms": metrics.avg_query_time_ms,
                "avg_delivery_time_ms": metrics.avg_delivery_time_ms,
            },
            notifications={
                "sent_today": metrics.notifications_sent_today,
                "dropped_today": metrics.notifications_dropped_today,
                "failed_today": metrics.notifications_failed_today,
            },
            system={
                "memory_usage_mb": metrics.memory_usage_mb,
                "cpu_usage_percent": metrics.cpu_usage_percent,
                "uptime_seconds": performance_monitor.uptime_seconds(),
            },
        )

    # Tasks

    @app.post("/api/tasks", response_model=TaskResponse, status_code=201)
    async def create_task(body: TaskCreateRequest, request: Request, actor: Actor = Depends(managers)):
        task = await request.app.state.tasks.create_task(
            actor,
            title=body.title,
            description=body.description,
            due_date=body.due_date,
            priority=body.priority,
        )
        return TaskResponse(message="Task created successfully", task=task)

    @app.get("/api/tasks", response_model=TaskListResponse)
    async def list_tasks(
        request: Request,
        status: Optional[TaskStatus] = Query(default=None),
        priority: Optional[TaskPriority] = Query(default=None),
        title: Optional[str] = Query(default=None),
        start_date: Optional[date] = Query(default=None),
        end_date: Optional[date] = Query(default=None),
        sort_by: Optional[str] = Query(default=None),
        order: str = Query(default="asc"),
        actor: Actor = Depends(managers),
    ):
        """List tasks with optional filters and a single sort field."""
        if order.lower() not in ("asc", "desc"):
            raise ValidationError("Sort order must be 'asc' or 'desc'", details={"order": order})
        task_filter = TaskFilter(
            status=status,
            priority=priority,
            title=title or None,
            due_from=start_date,
            due_to=end_date,
        )
        sort = TaskSort(field=sort_by, descending=order.lower() == "desc") if sort_by else None
        tasks = await request.app.state.tasks.list_tasks(task_filter, sort)
        return TaskListResponse(tasks=tasks)

    @app.get("/api/tasks/assigned", response_model=TaskListResponse)
    async def view_assigned_tasks(request: Request, actor: Actor = Depends(get_actor)):
        tasks = await request.app.state.tasks.view_assigned_tasks(actor)
        return TaskListResponse(tasks=tasks)

    @app.get("/api/tasks/analytics/user", response_model=AnalyticsResponse)
    async def user_task_analytics(request: Request, actor: Actor = Depends(get_actor)):
        data = await request.app.state.analytics.get_task_analytics(actor.id)
        return AnalyticsResponse(message="User task analytics retrieved successfully", data=data)

    @app.get("/api/tasks/analytics/team/{team_id}", response_model=AnalyticsResponse)
    async def team_task_analytics(team_id: int, request: Request, actor: Actor = Depends(get_actor)):
        data = await request.app.state.analytics.get_team_task_analytics_for(actor, team_id)
        return AnalyticsResponse(message="Team task analytics retrieved successfully", data=data)

    @app.get("/api/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: int, request: Request, actor: Actor = Depends(get_actor)):
        task = await request.app.state.tasks.get_task(actor, task_id)
        return TaskResponse(task=task)

    @app.put("/api/tasks/{task_id}/assign", response_model=TaskResponse)
    async def assign_task(task_id: int, body: TaskAssignRequest, request: Request,
                          actor: Actor = Depends(managers)):
        task = await request.app.state.tasks.assign_task(actor, task_id, body.user_id)
        return TaskResponse(message="Task assigned successfully", task=task)

    @app.put("/api/tasks/{task_id}", response_model=TaskResponse)
    async def update_task(task_id: int, body: TaskUpdateRequest, request: Request,
                          actor: Actor = Depends(get_actor)):
        partial = body.model_dump(exclude_none=True)
        task = await request.app.state.tasks.update_task(actor, task_id, partial)
        return TaskResponse(message="Task updated successfully", task=task)

    @app.delete("/api/tasks/{task_id}", response_model=MessageResponse)
    async def delete_task(task_id: int, request: Request, actor: Actor = Depends(get_actor)):
        await request.app.state.tasks.delete_task(actor, task_id)
        return MessageResponse(message="Task deleted successfully")

    # Teams

    @app.post("/api/teams", response_model=TeamResponse, status_code=201)
    async def create_team(body: TeamCreateRequest, request: Request, actor: Actor = Depends(admins)):
        team = await request.app.state.teams.create_team(actor, body.name, body.manager_id, body.member_ids)
        return TeamResponse(message="Team created successfully", team=team)

    @app.put("/api/teams/addMember", response_model=TeamResponse)
    async def add_team_member(body: TeamMemberRequest, request: Request, actor: Actor = Depends(managers)):
        team = await request.app.state.teams.add_member(actor, body.team_id, body.member_id)
        return TeamResponse(message="Member added successfully", team=team)

    @app.put("/api/teams/removeMember", response_model=TeamResponse)
    async def remove_team_member(body: TeamMemberRequest, request: Request, actor: Actor = Depends(managers)):
        team = await request.app.state.teams.remove_member(actor, body.team_id, body.member_id)
        return TeamResponse(message="Member removed successfully", team=team)

    @app.get("/api/teams/{team_id}", response_model=TeamDetailResponse)
    async def get_team(team_id: int, request: Request, actor: Actor = Depends(get_actor)):
        team = await request.app.state.teams.get_team(team_id)
        return TeamDetailResponse(team=team)

    @app.delete("/api/teams/{team_id}", response_model=MessageResponse)
    async def delete_team(team_id: int, request: Request, actor: Actor = Depends(get_actor)):
        await request.app.state.teams.delete_team(actor, team_id)
        return MessageResponse(message="Team deleted successfully")

    # Users

    @app.get("/api/users/me", response_model=ProfileResponse)
    async def get_profile(request: Request, actor: Actor = Depends(get_actor)):
        profile = await request.app.state.users.get_profile(actor)
        return ProfileResponse(user=profile)

    @app.put("/api/users/me", response_model=ProfileResponse)
    async def update_profile(body: ProfileUpdateRequest, request: Request, actor: Actor = Depends(get_actor)):
        profile = await request.app.state.users.update_profile(actor, username=body.username, email=body.email)
        return ProfileResponse(message="Profile updated successfully", user=profile)

    @app.get("/api/users", response_model=UserListResponse)
    async def list_users(request: Request, actor: Actor = Depends(admins)):
        users = await request.app.state.users.list_users(actor)
        return UserListResponse(users=users)

    @app.delete("/api/users/{user_id}", response_model=MessageResponse)
    async def delete_user(user_id: int, request: Request, actor: Actor = Depends(admins)):
        await request.app.state.users.delete_user(actor, user_id)
        return MessageResponse(message="User deleted successfully")

    # Notifications channel

    @app.websocket("/ws/notifications")
    async def notifications_channel(websocket: WebSocket):
        """
        Per-user notification channel.

        The client registers with ``{"type": "register", "token": ...}``; a
        later registration for the same user replaces the earlier channel.
        """
        await websocket.accept()
        state = websocket.app.state
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_text(_frame("error", {"message": "Invalid JSON"}))
                    continue
                if not isinstance(message, dict):
                    await websocket.send_text(_frame("error", {"message": "Invalid message"}))
                    continue

                kind = message.get("type")
                if kind == "register":
                    try:
                        actor = state.identity.resolve(message.get("token"))
                    except Unauthenticated as e:
                        await websocket.send_text(_frame("error", {"message": e.message}))
                        continue
                    state.registry.register(actor.id, websocket)
                    await websocket.send_text(_frame("registered", {"user_id": actor.id}))
                elif kind == "ping":
                    await websocket.send_text(_frame("pong", {}))
                else:
                    await websocket.send_text(_frame("error", {"message": f"Unknown message type: {kind}"}))
        except WebSocketDisconnect:
            logger.debug("Notification channel disconnected")
        finally:
            user_id = state.registry.unregister(websocket)
            if user_id is not None:
                logger.info(f"User {user_id} notification channel closed")


app = create_app()
