"""
Performance Monitoring

Collects entity store call timings, notification delivery timings and daily
notification counters, and exposes a process snapshot for the metrics
endpoint. Also provides the ``store_operation`` decorator that wraps every
entity store call with timing and failure translation.
"""

import functools
import logging
import sqlite3
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import psutil

from .errors import DependencyFailure

# Keep last 1000 data points for averages
METRICS_HISTORY_SIZE = 1000
SLOW_QUERY_THRESHOLD_MS = 50
SLOW_DELIVERY_THRESHOLD_MS = 200

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


@dataclass
class SystemMetrics:
    """Current system performance metrics."""
    connected_users: int
    total_tasks: int
    total_teams: int
    total_users: int
    avg_query_time_ms: float
    avg_delivery_time_ms: float
    notifications_sent_today: int
    notifications_dropped_today: int
    notifications_failed_today: int
    memory_usage_mb: float
    cpu_usage_percent: float


class PerformanceMonitor:
    """
    Performance monitoring for store calls and notification delivery.

    Daily counters reset on the first update after UTC midnight.
    """

    def __init__(self):
        self.query_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.delivery_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats: Dict[str, int] = defaultdict(int)
        self.start_time = datetime.now(timezone.utc)
        self._last_reset_date = self.start_time.date()

    def record_query_time(self, operation: str, duration_ms: float):
        """
        Record an entity store call duration.

        Args:
            operation: Name of the store operation
            duration_ms: Call duration in milliseconds
        """
        self.query_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=duration_ms,
            operation=operation
        ))
        if duration_ms > SLOW_QUERY_THRESHOLD_MS:
            logger.warning(f"Slow query detected: {operation} took {duration_ms:.2f}ms")

    def record_delivery_time(self, event: str, duration_ms: float):
        """
        Record a single notification delivery duration.

        Args:
            event: Event name that was delivered
            duration_ms: Delivery duration in milliseconds
        """
        self.delivery_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=duration_ms,
            operation=event
        ))
        if duration_ms > SLOW_DELIVERY_THRESHOLD_MS:
            logger.warning(f"Slow notification delivery: {event} took {duration_ms:.2f}ms")

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        """Increment a daily statistics counter."""
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def get_average_query_time(self) -> float:
        if not self.query_times:
            return 0.0
        return sum(m.value for m in self.query_times) / len(self.query_times)

    def get_average_delivery_time(self) -> float:
        if not self.delivery_times:
            return 0.0
        return sum(m.value for m in self.delivery_times) / len(self.delivery_times)

    def get_memory_usage_mb(self) -> float:
        """Get current process memory usage in MB."""
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        """Get current process CPU usage percentage."""
        try:
            return psutil.Process().cpu_percent(interval=None)
        except psutil.Error as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def get_system_metrics(self, registry, database) -> SystemMetrics:
        """
        Collect a snapshot of system metrics.

        Args:
            registry: ChannelRegistry holding live notification channels
            database: TaskDatabase instance

        Returns:
            SystemMetrics: Current system performance data
        """
        counts = database.count_entities()
        self._check_daily_reset()
        return SystemMetrics(
            connected_users=registry.count(),
            total_tasks=counts.get("tasks", 0),
            total_teams=counts.get("teams", 0),
            total_users=counts.get("users", 0),
            avg_query_time_ms=self.get_average_query_time(),
            avg_delivery_time_ms=self.get_average_delivery_time(),
            notifications_sent_today=self.daily_stats.get("notifications_sent", 0),
            notifications_dropped_today=self.daily_stats.get("notifications_dropped", 0),
            notifications_failed_today=self.daily_stats.get("notifications_failed", 0),
            memory_usage_mb=self.get_memory_usage_mb(),
            cpu_usage_percent=self.get_cpu_usage_percent(),
        )

    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def store_operation(operation: str) -> Callable:
    """
    Decorate an entity store method with timing and failure translation.

    Any ``sqlite3.Error`` escaping the method is logged with its detail and
    re-raised as an opaque ``DependencyFailure``.

    Args:
        operation: Name recorded in the performance monitor and logs
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            except sqlite3.Error as e:
                logger.error(f"Entity store failure in {operation}: {e}")
                raise DependencyFailure(operation) from e
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                performance_monitor.record_query_time(operation, duration_ms)
        return wrapper
    return decorator
