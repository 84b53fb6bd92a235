"""
Rule-based monitor for stuck offline queue items.
Read-only: derives operator alerts from live queue state and never mutates it,
so it can run at any cadence alongside the sync processor.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..core.config import settings
from ..models.base import now_ms
from ..models.queue_item import QueueStatus
from .offline_queue import OfflineQueue

logger = logging.getLogger(__name__)

# Configurable thresholds
STUCK_AGE_MINUTES = settings.STUCK_ITEM_AGE_MINUTES   # pending/processing older than this = stuck
MAX_RETRIES = settings.SYNC_MAX_RETRIES               # failed at this many retries = stuck
CRITICAL_STUCK_COUNT = settings.CRITICAL_STUCK_THRESHOLD

IN_FLIGHT_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


class AlertSeverity:
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType:
    STUCK_ITEMS = "stuck_items"
    SYNC_ERRORS = "sync_errors"


@dataclass
class StuckItem:
    id: str
    type: str
    status: str
    created_at: int
    age_minutes: int
    retries: int
    error: Optional[str] = None
    farm_id: Optional[str] = None


@dataclass
class SyncAlert:
    type: str
    severity: str
    message: str
    count: Optional[int] = None
    details: List[str] = field(default_factory=list)


def check_stuck_items(
    queue: OfflineQueue, farm_id: Optional[str] = None, now: Optional[int] = None
) -> List[StuckItem]:
    """Return queue items that need attention, optionally for one farm."""
    now = now if now is not None else now_ms()
    stuck: List[StuckItem] = []
    for item in queue.list_all():
        item_farm = (item.payload or {}).get("farm_id")
        if farm_id is not None and item_farm != farm_id:
            continue

        age_ms = now - item.created_at
        age_minutes = int(age_ms // 60000)
        too_old = item.status in IN_FLIGHT_STATUSES and age_ms > STUCK_AGE_MINUTES * 60000
        exhausted = item.status == QueueStatus.FAILED.value and item.retries >= MAX_RETRIES
        if too_old or exhausted:
            stuck.append(StuckItem(
                id=item.id,
                type=item.type,
                status=item.status,
                created_at=item.created_at,
                age_minutes=age_minutes,
                retries=item.retries,
                error=item.error,
                farm_id=item_farm,
            ))
    return stuck


def get_stuck_items_count(queue: OfflineQueue) -> int:
    """Stuck items across all farms (admin view)."""
    return len(check_stuck_items(queue))


def generate_sync_alerts(queue: OfflineQueue, farm_id: Optional[str] = None) -> List[SyncAlert]:
    stuck = check_stuck_items(queue, farm_id)
    if not stuck:
        return []

    alerts: List[SyncAlert] = []

    # ── Rule 1: Stuck items (warning below threshold, critical at/above) ───
    count = len(stuck)
    severity = AlertSeverity.CRITICAL if count >= CRITICAL_STUCK_COUNT else AlertSeverity.WARNING
    alerts.append(SyncAlert(
        type=AlertType.STUCK_ITEMS,
        severity=severity,
        message=(
            f"{count} sync item{'s' if count != 1 else ''} stuck for over "
            f"{STUCK_AGE_MINUTES} minutes or failed after {MAX_RETRIES} attempts."
        ),
        count=count,
        details=[s.id for s in stuck],
    ))

    # ── Rule 2: Distinct errors among stuck items ──────────────────────────
    errors = sorted({s.error for s in stuck if s.error})
    if errors:
        alerts.append(SyncAlert(
            type=AlertType.SYNC_ERRORS,
            severity=AlertSeverity.WARNING,
            message=f"{len(errors)} distinct sync error{'s' if len(errors) != 1 else ''} reported.",
            count=len(errors),
            details=errors,
        ))

    if severity == AlertSeverity.CRITICAL:
        logger.warning("Critical sync alert: %d stuck items", count)
    return alerts


def has_active_alerts(queue: OfflineQueue, farm_id: Optional[str] = None) -> bool:
    return len(generate_sync_alerts(queue, farm_id)) > 0


def get_alert_severity_color(severity: str) -> Dict[str, str]:
    """Badge classes for the UI."""
    if severity == AlertSeverity.CRITICAL:
        return {"bg": "bg-destructive/10", "text": "text-destructive", "border": "border-destructive"}
    if severity == AlertSeverity.WARNING:
        return {"bg": "bg-yellow-50", "text": "text-yellow-700", "border": "border-yellow-300"}
    return {"bg": "bg-muted", "text": "text-muted-foreground", "border": "border-border"}
