"""
Real-time Notification Dispatch

Maps a logical user id to that user's live delivery channel and pushes named
events to it. Delivery is best-effort and fire-and-forget: ``notify`` returns
immediately, the actual send runs as its own asyncio task, and failures are
logged and counted but never surface to the caller.

Components:
- ChannelRegistry: concurrency-safe user -> channel handle map, owned by the
  process and injected into the dispatcher
- NotificationTransport / WebSocketTransport: how a payload reaches a handle
- NotificationDispatcher: lookup + scheduling + failure suppression
"""

import asyncio
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set

from .monitoring import PerformanceMonitor, performance_monitor

logger = logging.getLogger(__name__)

# Event names delivered to clients
TASK_CREATED = "taskCreated"
TASK_UPDATED = "taskUpdated"
TASK_DELETED = "taskDeleted"
TASK_ASSIGNED = "taskAssigned"
TEAM_CREATED = "teamCreated"
TEAM_MEMBER_ADDED = "teamMemberAdded"
TEAM_MEMBER_REMOVED = "teamMemberRemoved"
TEAM_DELETED = "teamDeleted"
PROFILE_UPDATED = "profileUpdated"


class ChannelRegistry:
    """
    Process-wide registry of live notification channels.

    Holds at most one handle per user; a later registration for the same
    user replaces the earlier one. All access goes through a lock so that
    connect/disconnect events from different tasks or threads cannot
    interleave.
    """

    def __init__(self):
        self._channels: Dict[int, Any] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, handle: Any) -> None:
        """
        Bind ``user_id`` to ``handle``, replacing any prior binding.

        A handle serves a single user: registering it for a new user unbinds
        whichever user it was bound to before.
        """
        with self._lock:
            previous_users = [uid for uid, bound in self._channels.items()
                              if bound is handle and uid != user_id]
            for uid in previous_users:
                del self._channels[uid]
            replaced = self._channels.get(user_id)
            self._channels[user_id] = handle
        for uid in previous_users:
            logger.info(f"User {uid} unbound; channel re-registered for user {user_id}")
        if replaced is not None and replaced is not handle:
            logger.info(f"User {user_id} re-registered; previous channel replaced")
        else:
            logger.info(f"User {user_id} registered for notifications")

    def unregister(self, handle: Any) -> Optional[int]:
        """
        Remove the binding whose value is ``handle``.

        Returns:
            The user id that was unbound, or None if the handle was not bound
            (e.g. it had already been replaced by a newer registration)
        """
        with self._lock:
            for user_id, bound in list(self._channels.items()):
                if bound is handle:
                    del self._channels[user_id]
                    break
            else:
                return None
        logger.info(f"User {user_id} disconnected")
        return user_id

    def lookup(self, user_id: int) -> Optional[Any]:
        with self._lock:
            return self._channels.get(user_id)

    def count(self) -> int:
        with self._lock:
            return len(self._channels)

    def clear(self) -> None:
        with self._lock:
            self._channels.clear()


class NotificationTransport(ABC):
    """Delivers one event to one channel handle."""

    @abstractmethod
    async def deliver(self, handle: Any, event: str, payload: Dict[str, Any]) -> None:
        """Send ``(event, payload)`` over ``handle``. May raise on failure."""


class WebSocketTransport(NotificationTransport):
    """Sends events as JSON text frames over a Starlette/FastAPI WebSocket."""

    async def deliver(self, handle: Any, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({
            "event": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, default=str)
        await handle.send_text(message)


class NotificationDispatcher:
    """
    Fire-and-forget delivery of named events to connected users.

    ``notify`` never blocks on delivery and never raises. Pending sends are
    tracked so they can be drained at shutdown.
    """

    def __init__(self, registry: ChannelRegistry, transport: NotificationTransport,
                 monitor: Optional[PerformanceMonitor] = None):
        """
        Args:
            registry: Channel registry shared with the connection endpoint
            transport: Transport used to reach a channel handle
            monitor: Performance monitor for delivery metrics
        """
        self.registry = registry
        self.transport = transport
        self.monitor = monitor or performance_monitor
        self._pending: Set[asyncio.Task] = set()

    def notify(self, user_id: Optional[int], event: str, payload: Dict[str, Any]) -> None:
        """
        Schedule delivery of ``(event, payload)`` to ``user_id``.

        Silently drops the notification (with a log line) when the user has
        no live channel or when called outside a running event loop.
        """
        try:
            if user_id is None:
                return
            handle = self.registry.lookup(user_id)
            if handle is None:
                logger.debug(f"User {user_id} not connected; '{event}' not delivered")
                self.monitor.increment_daily_stat("notifications_dropped")
                return

            loop = asyncio.get_running_loop()
            task = loop.create_task(self._deliver(user_id, handle, event, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        except Exception as e:
            logger.warning(f"Failed to schedule '{event}' for user {user_id}: {e}")
            self.monitor.increment_daily_stat("notifications_failed")

    def notify_many(self, user_ids: Iterable[int], event: str, payload: Dict[str, Any]) -> None:
        """Fan the same event out to several users independently."""
        for user_id in user_ids:
            self.notify(user_id, event, payload)

    async def _deliver(self, user_id: int, handle: Any, event: str, payload: Dict[str, Any]) -> bool:
        start = time.perf_counter()
        try:
            await self.transport.deliver(handle, event, payload)
        except Exception as e:
            logger.warning(f"Failed to deliver '{event}' to user {user_id}: {e}")
            self.monitor.increment_daily_stat("notifications_failed")
            return False
        finally:
            self.monitor.record_delivery_time(event, (time.perf_counter() - start) * 1000)

        logger.debug(f"Notification '{event}' sent to user {user_id}")
        self.monitor.increment_daily_stat("notifications_sent")
        return True

    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float = 10.0) -> None:
        """
        Wait for in-flight deliveries to finish (used at shutdown and in tests).

        Deliveries scheduled while draining are awaited too; the timeout
        bounds the whole wait.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Notification drain timed out with {len(self._pending)} pending")
                return
            await asyncio.wait(list(self._pending), timeout=remaining)
