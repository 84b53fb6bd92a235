"""
Sync health check.
Summarises the offline pipeline for one farm and turns the summary into
diagnostics with suggestions for the user.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.config import settings
from ..models.base import now_ms
from .conflict_detection import ConflictDetector
from .offline_queue import OfflineQueue
from .sync_alerts import check_stuck_items


@dataclass
class QueueHealth:
    pending_count: int = 0
    oldest_item_age_minutes: Optional[int] = None
    has_stuck_items: bool = False
    stuck_count: int = 0


@dataclass
class SyncHealthStatus:
    overall: str = "healthy"  # healthy | warning
    online: bool = False
    queue: QueueHealth = field(default_factory=QueueHealth)
    conflict_count: int = 0

    @property
    def has_unresolved_conflicts(self) -> bool:
        return self.conflict_count > 0


@dataclass
class SyncDiagnostic:
    issue: str
    severity: str
    suggestion: str


def get_sync_health(
    queue: OfflineQueue,
    conflicts: ConflictDetector,
    farm_id: Optional[str] = None,
    online: bool = False,
) -> SyncHealthStatus:
    status = SyncHealthStatus(online=online)

    pending = queue.list_pending()
    status.queue.pending_count = len(pending)
    if pending:
        oldest = min(item.created_at for item in pending)
        status.queue.oldest_item_age_minutes = int((now_ms() - oldest) // 60000)

    stuck = check_stuck_items(queue, farm_id)
    status.queue.stuck_count = len(stuck)
    status.queue.has_stuck_items = bool(stuck)

    if farm_id:
        status.conflict_count = conflicts.get_conflict_count(farm_id)

    if (
        status.queue.has_stuck_items
        or status.has_unresolved_conflicts
        or status.queue.pending_count > settings.LARGE_QUEUE_THRESHOLD
    ):
        status.overall = "warning"
    return status


def diagnose_sync_issues(health: SyncHealthStatus) -> List[SyncDiagnostic]:
    diagnostics: List[SyncDiagnostic] = []

    if not health.online and health.queue.pending_count:
        diagnostics.append(SyncDiagnostic(
            issue=f"Offline with {health.queue.pending_count} items waiting to sync",
            severity="info",
            suggestion="Your records are saved on this device and will sync when you reconnect.",
        ))

    if health.queue.has_stuck_items:
        diagnostics.append(SyncDiagnostic(
            issue=f"{health.queue.stuck_count} items stuck in the sync queue",
            severity="warning",
            suggestion="Check your internet connection and retry the failed items.",
        ))

    if health.queue.pending_count > settings.LARGE_QUEUE_THRESHOLD:
        diagnostics.append(SyncDiagnostic(
            issue=f"Large queue with {health.queue.pending_count} pending items",
            severity="warning",
            suggestion="Connect to WiFi to sync your data faster.",
        ))

    if health.has_unresolved_conflicts:
        diagnostics.append(SyncDiagnostic(
            issue=f"{health.conflict_count} unresolved data conflicts",
            severity="warning",
            suggestion="Review and resolve conflicts to keep records consistent.",
        ))

    return diagnostics
