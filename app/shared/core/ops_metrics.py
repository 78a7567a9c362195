"""
Operational Metrics for Backoffice

Prometheus metrics for directory sync runs, upstream identity-provider calls
and API error rates. Scraped from `/metrics`.
"""

from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar, cast

from prometheus_client import Counter, Gauge, Histogram
import time

# --- Directory Sync ---
DIRECTORY_SYNC_RUNS_TOTAL = Counter(
    "backoffice_directory_sync_runs_total",
    "Total number of directory sync runs",
    ["kind", "outcome"],  # kind: full, people; outcome: success, partial, failed, busy
)

DIRECTORY_SYNC_DURATION = Histogram(
    "backoffice_directory_sync_duration_seconds",
    "Duration of directory sync runs",
    ["kind"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800),
)

DIRECTORY_SYNC_RECORDS_TOTAL = Counter(
    "backoffice_directory_sync_records_total",
    "Records changed by directory sync",
    ["record", "change"],  # record: user, person, group, role; change: created, updated, deleted
)

# --- Upstream Identity Provider ---
GRAPH_API_CALLS_TOTAL = Counter(
    "backoffice_graph_api_calls_total",
    "Total number of Microsoft Graph calls",
    ["operation", "status"],
)

# --- API ---
API_ERRORS_TOTAL = Counter(
    "backoffice_api_errors_total",
    "Total API errors by status code",
    ["path", "method", "status_code"],
)

SYSTEM_HEALTH = Gauge(
    "backoffice_system_health",
    "Overall system health (1 = healthy, 0 = degraded)",
)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _run_outcome(result: Any) -> str:
    if getattr(result, "busy", False):
        return "busy"
    if getattr(result, "success", False):
        return "success"
    stats = getattr(result, "stats", None)
    synced = getattr(stats, "groups_synced", 0) or getattr(stats, "synced_count", 0)
    return "partial" if synced else "failed"


def time_sync_run(kind: str) -> Callable[[F], F]:
    """Decorator timing an async sync entry point and counting its outcome."""

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                DIRECTORY_SYNC_RUNS_TOTAL.labels(kind=kind, outcome="failed").inc()
                raise
            finally:
                DIRECTORY_SYNC_DURATION.labels(kind=kind).observe(
                    time.perf_counter() - start_time
                )
            DIRECTORY_SYNC_RUNS_TOTAL.labels(kind=kind, outcome=_run_outcome(result)).inc()
            return result

        return cast(F, wrapper)

    return decorator


def record_sync_changes(stats: Any) -> None:
    """Fold a run's counters into the record-change counter."""
    pairs = (
        ("user", "created", "users_created"),
        ("user", "updated", "users_updated"),
        ("user", "deleted", "users_deleted"),
        ("person", "created", "people_created"),
        ("person", "updated", "people_updated"),
        ("person", "deleted", "people_deleted"),
        ("group", "deleted", "groups_removed"),
        ("role", "created", "roles_assigned"),
        ("role", "deleted", "roles_removed"),
    )
    for record, change, attr in pairs:
        value = int(getattr(stats, attr, 0) or 0)
        if value > 0:
            DIRECTORY_SYNC_RECORDS_TOTAL.labels(record=record, change=change).inc(value)
