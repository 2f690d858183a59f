"""
Sync Statistics
===============

Dashboard counters derived from connections and the sync log stream, plus
the Prometheus metrics fed by every completed run.
"""

from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from prometheus_client import Counter, Histogram

from .models import SyncLog, SyncStatus, utc_now
from .stores import ConnectionStore, SyncLogStore

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

SYNC_RUNS = Counter(
    "channel_sync_runs_total",
    "Completed sync runs",
    ["platform", "status", "sync_type"]
)

SYNC_BOOKINGS = Counter(
    "channel_sync_bookings_total",
    "Bookings written by sync runs",
    ["platform", "action"]  # action: added, updated
)

SYNC_DURATION = Histogram(
    "channel_sync_run_duration_seconds",
    "Wall time of a sync run from start to log write",
    ["platform"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)


@dataclass
class SyncStats:
    """Snapshot shown on the channel dashboard."""
    total_connections: int = 0
    active_connections: int = 0
    auto_sync_count: int = 0
    synced_today: int = 0
    error_count: int = 0
    platform_counts: Dict[str, int] = field(default_factory=dict)
    runs_today: int = 0
    failed_runs_today: int = 0


def start_of_day(now: datetime) -> datetime:
    """Midnight UTC of the day containing ``now``."""
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class SyncStatsAggregator:
    """Computes dashboard stats and records per-run metrics."""

    def __init__(self, connections: ConnectionStore, sync_logs: SyncLogStore):
        self.connections = connections
        self.sync_logs = sync_logs

    async def get_stats(self, now: Optional[datetime] = None) -> SyncStats:
        """
        Compute the dashboard snapshot.

        Args:
            now: Reference time; "today" is the UTC day containing it

        Returns:
            SyncStats with connection- and log-derived counters
        """
        now = now or utc_now()
        midnight = start_of_day(now)

        connections = await self.connections.list_connections()
        logs = await self.sync_logs.list_sync_logs_since(midnight)

        platforms = TallyCounter(c.platform.value for c in connections)

        return SyncStats(
            total_connections=len(connections),
            active_connections=sum(1 for c in connections if c.enabled),
            auto_sync_count=sum(1 for c in connections if c.auto_sync_enabled),
            synced_today=sum(
                1 for c in connections
                if c.last_sync_at is not None and c.last_sync_at >= midnight
            ),
            error_count=sum(1 for c in connections if c.last_sync_status == SyncStatus.ERROR),
            platform_counts=dict(sorted(platforms.items())),
            runs_today=len(logs),
            failed_runs_today=sum(1 for log in logs if log.status == SyncStatus.ERROR)
        )

    def observe(self, log: SyncLog) -> None:
        """Record a completed run in the Prometheus metrics."""
        platform = log.platform.value

        SYNC_RUNS.labels(
            platform=platform,
            status=log.status.value,
            sync_type=log.sync_type.value
        ).inc()

        if log.added:
            SYNC_BOOKINGS.labels(platform=platform, action="added").inc(log.added)
        if log.updated:
            SYNC_BOOKINGS.labels(platform=platform, action="updated").inc(log.updated)

        SYNC_DURATION.labels(platform=platform).observe(max(log.duration_seconds, 0.0))
