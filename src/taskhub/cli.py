"""
Command-line interface for TaskHub.

Runs the API server and provides the administrative commands used to
provision a database, create users and mint access tokens.
"""

import dataclasses
import logging
import os
import socket
import sys
from typing import Optional

import click
import uvicorn

from .config import Settings
from .database import TaskDatabase
from .errors import TaskHubError
from .identity import IdentityProvider
from .models import Role
from .notifications import ChannelRegistry, NotificationDispatcher, WebSocketTransport
from .users import UserDirectory

logger = logging.getLogger(__name__)

db_path_option = click.option(
    "--db-path", default=None, help="SQLite database path (overrides DATABASE_PATH)"
)


def check_port_available(host: str, port: int) -> bool:
    """Return True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
        return True


def print_startup_banner(host: str, port: int, database_path: str) -> None:
    print("=" * 60)
    print("TASKHUB API STARTED")
    print("=" * 60)
    print(f"REST API:       http://{host}:{port}/api")
    print(f"Health:         http://{host}:{port}/healthz")
    print(f"Notifications:  ws://{host}:{port}/ws/notifications")
    print(f"Database:       {database_path}")
    print("=" * 60)


def _settings(ctx: click.Context, **overrides) -> Settings:
    """Environment settings with any non-None command-line overrides applied."""
    settings: Settings = ctx.obj["settings"]
    changes = {k: v for k, v in overrides.items() if v is not None}
    return dataclasses.replace(settings, **changes) if changes else settings


def _quiet_dispatcher() -> NotificationDispatcher:
    # No channels are registered outside the server process
    return NotificationDispatcher(ChannelRegistry(), WebSocketTransport())


@click.group()
@click.pass_context
def main(ctx: click.Context):
    """TaskHub task and team management service."""
    ctx.ensure_object(dict)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    ctx.obj["settings"] = settings


@main.command()
@click.option("--host", default=None, help="Interface to bind")
@click.option("--port", type=int, default=None, help="Port to bind")
@db_path_option
@click.option("--reload", is_flag=True, help="Restart the server on code changes")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int],
          db_path: Optional[str], reload: bool):
    """Run the HTTP and WebSocket server."""
    settings = _settings(ctx, host=host, port=port, database_path=db_path)
    if not check_port_available(settings.host, settings.port):
        click.echo(f"Port {settings.port} is already in use on {settings.host}", err=True)
        sys.exit(1)

    print_startup_banner(settings.host, settings.port, settings.database_path)

    if reload:
        # The reloader imports the app by name, so settings travel through the environment
        os.environ["DATABASE_PATH"] = settings.database_path
        uvicorn.run("taskhub.api:app", host=settings.host, port=settings.port,
                    reload=True, log_level=settings.log_level.lower())
        return

    from .api import create_app

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


@main.command("init-db")
@db_path_option
@click.option("--fresh", is_flag=True, help="Drop existing tables first")
@click.pass_context
def init_db(ctx: click.Context, db_path: Optional[str], fresh: bool):
    """Create the database schema."""
    settings = _settings(ctx, database_path=db_path)
    try:
        with TaskDatabase(settings.database_path) as db:
            if fresh:
                db.initialize_fresh()
    except RuntimeError as e:
        logger.error(f"Failed to initialize database: {e}")
        click.echo(f"Failed to initialize database: {e}", err=True)
        sys.exit(1)
    click.echo(f"Database ready at {settings.database_path}")


@main.command("create-user")
@click.argument("username")
@click.argument("email")
@click.option("--role", type=click.Choice([r.value for r in Role]), default=Role.USER.value,
              show_default=True)
@db_path_option
@click.pass_context
def create_user(ctx: click.Context, username: str, email: str, role: str, db_path: Optional[str]):
    """Provision a user account."""
    settings = _settings(ctx, database_path=db_path)
    with TaskDatabase(settings.database_path) as db:
        try:
            profile = UserDirectory(db, _quiet_dispatcher()).create_user(username, email, Role(role))
        except TaskHubError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
    click.echo(f"Created user {profile.id} ({profile.username}, {profile.role.value})")


@main.command("issue-token")
@click.argument("user_id", type=int)
@click.option("--minutes", type=int, default=None, help="Token lifetime in minutes")
@db_path_option
@click.pass_context
def issue_token(ctx: click.Context, user_id: int, minutes: Optional[int], db_path: Optional[str]):
    """Print a signed access token for USER_ID."""
    settings = _settings(ctx, database_path=db_path, jwt_expiry_minutes=minutes)
    with TaskDatabase(settings.database_path) as db:
        user = db.get_user(user_id)
        if user is None:
            click.echo(f"Error: User {user_id} not found", err=True)
            sys.exit(1)
        token = IdentityProvider(db, settings).issue_token(user)
    click.echo(token)


if __name__ == "__main__":
    main()
