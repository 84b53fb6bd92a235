"""Sync alerts API: stuck items, alert list and pipeline health."""
from dataclasses import asdict
from fastapi import APIRouter, Depends
from typing import List, Optional
from pydantic import BaseModel

from ..core.dependencies import get_conflict_detector, get_connectivity, get_queue
from ..services.conflict_detection import ConflictDetector
from ..services.connectivity import ConnectivityMonitor
from ..services.offline_queue import OfflineQueue
from ..services.sync_alerts import (
    check_stuck_items,
    generate_sync_alerts,
    get_alert_severity_color,
)
from ..services.sync_health import diagnose_sync_issues, get_sync_health

router = APIRouter(prefix="/sync-alerts", tags=["sync-alerts"])


class SyncAlertResponse(BaseModel):
    type: str
    severity: str
    message: str
    count: Optional[int]
    details: List[str]
    colors: dict


class StuckItemResponse(BaseModel):
    id: str
    type: str
    status: str
    created_at: int
    age_minutes: int
    retries: int
    error: Optional[str]
    farm_id: Optional[str]


@router.get("/", response_model=List[SyncAlertResponse])
def list_alerts(farm_id: Optional[str] = None, queue: OfflineQueue = Depends(get_queue)):
    """Alerts derived from live queue state, optionally for one farm."""
    return [
        {**asdict(alert), "colors": get_alert_severity_color(alert.severity)}
        for alert in generate_sync_alerts(queue, farm_id)
    ]


@router.get("/stuck", response_model=List[StuckItemResponse])
def list_stuck(farm_id: Optional[str] = None, queue: OfflineQueue = Depends(get_queue)):
    return [asdict(item) for item in check_stuck_items(queue, farm_id)]


@router.get("/health")
def sync_health(
    farm_id: Optional[str] = None,
    queue: OfflineQueue = Depends(get_queue),
    detector: ConflictDetector = Depends(get_conflict_detector),
    connectivity: ConnectivityMonitor = Depends(get_connectivity),
):
    health = get_sync_health(queue, detector, farm_id, online=connectivity.is_online())
    return {
        **asdict(health),
        "has_unresolved_conflicts": health.has_unresolved_conflicts,
        "diagnostics": [asdict(d) for d in diagnose_sync_issues(health)],
    }
