"""Sync conflicts API: unresolved conflicts per farm and manual resolution."""
from fastapi import APIRouter, Depends, HTTPException
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime

from ..core.dependencies import get_conflict_detector
from ..core.errors import RemoteError
from ..models.conflict import ResolutionStrategy
from ..services.conflict_detection import ConflictDetector

router = APIRouter(prefix="/conflicts", tags=["conflicts"])


class ConflictResponse(BaseModel):
    id: str
    farm_id: str
    table_name: str
    record_id: str
    client_data: Dict[str, Any]
    server_data: Dict[str, Any]
    resolution: str
    resolved_data: Optional[Dict[str, Any]]
    created_at: datetime
    resolved_at: Optional[datetime]


class ConflictResolve(BaseModel):
    strategy: str
    merged_data: Optional[Dict[str, Any]] = None


@router.get("/farm/{farm_id}", response_model=List[ConflictResponse])
def list_unresolved(farm_id: str, detector: ConflictDetector = Depends(get_conflict_detector)):
    """Unresolved conflicts for a farm, newest first."""
    return detector.get_unresolved_conflicts(farm_id)


@router.get("/farm/{farm_id}/count")
def conflict_count(farm_id: str, detector: ConflictDetector = Depends(get_conflict_detector)):
    return {"count": detector.get_conflict_count(farm_id)}


@router.post("/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve(
    conflict_id: str,
    body: ConflictResolve,
    detector: ConflictDetector = Depends(get_conflict_detector),
):
    if body.strategy not in ResolutionStrategy.APPLICABLE:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid strategy. Choose from: {ResolutionStrategy.APPLICABLE}",
        )
    try:
        return await detector.resolve_conflict(conflict_id, body.strategy, body.merged_data)
    except LookupError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except RemoteError as exc:
        raise HTTPException(status_code=502, detail=f"Could not apply resolution: {exc.message}")
