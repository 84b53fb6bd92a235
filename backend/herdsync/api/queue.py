"""Offline queue API: enqueue, inspect, retry and confirm deferred operations."""
from fastapi import APIRouter, Depends, HTTPException, status
from typing import List

from ..core.dependencies import get_processor, get_queue
from ..models.queue_item import QueueItemType
from ..schemas.queue import (
    QueueItemCreate,
    QueueItemResponse,
    SyncResultResponse,
    TranscriptionConfirm,
)
from ..services.offline_queue import OfflineQueue
from ..services.sync_processor import SyncProcessor

router = APIRouter(prefix="/queue", tags=["queue"])

ITEM_TYPES = [t.value for t in QueueItemType]


@router.post("/", status_code=status.HTTP_201_CREATED)
def enqueue_item(item_in: QueueItemCreate, queue: OfflineQueue = Depends(get_queue)):
    """Queue an operation and return its optimistic id for UI correlation."""
    if item_in.type not in ITEM_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid item type. Choose from: {ITEM_TYPES}")
    optimistic_id = queue.enqueue(item_in.model_dump(exclude_none=True))
    return {"optimistic_id": optimistic_id}


@router.get("/", response_model=List[QueueItemResponse])
def list_items(queue: OfflineQueue = Depends(get_queue)):
    return queue.list_all()


@router.get("/pending", response_model=List[QueueItemResponse])
def list_pending(queue: OfflineQueue = Depends(get_queue)):
    return queue.list_pending()


@router.get("/failed", response_model=List[QueueItemResponse])
def list_failed(queue: OfflineQueue = Depends(get_queue)):
    return queue.list_failed()


@router.get("/count")
def queue_counts(queue: OfflineQueue = Depends(get_queue)):
    return {"pending": queue.get_pending_count(), "total": queue.get_queue_count()}


@router.post("/retry-failed")
def retry_all_failed(queue: OfflineQueue = Depends(get_queue)):
    return {"reset_count": queue.reset_all_failed()}


@router.post("/sync", response_model=SyncResultResponse)
async def run_sync(processor: SyncProcessor = Depends(get_processor)):
    """Run a sync pass now (manual trigger)."""
    result = await processor.sync_queue("manual")
    return result.as_dict()


@router.delete("/completed")
def clear_completed(queue: OfflineQueue = Depends(get_queue)):
    return {"removed": queue.clear_completed()}


@router.post("/{item_id}/retry")
def retry_item(item_id: str, queue: OfflineQueue = Depends(get_queue)):
    queue.reset_for_retry(item_id)
    return {"status": "pending"}


@router.post("/{item_id}/confirm-transcription")
def confirm_transcription(
    item_id: str,
    body: TranscriptionConfirm,
    queue: OfflineQueue = Depends(get_queue),
):
    """Approve (or correct) a draft transcription so the item is replayed."""
    queue.confirm_transcription(item_id, body.transcription)
    return {"status": "pending"}


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_item(item_id: str, queue: OfflineQueue = Depends(get_queue)):
    queue.remove(item_id)
