"""
Offline queue service.
Durable, bounded queue of deferred operations captured while the device is
offline (or optimistically while online). Every mutation of the local queue
store goes through this module; each operation is a single transaction.
"""
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..models.base import get_sessionmaker, generate_uuid, now_ms
from ..models.queue_item import QueueItem, QueueStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class OfflineQueue:
    """
    Single owner of the local queue store.

    Missing ids are silent no-ops everywhere. The only way an item is dropped
    without being processed is capacity eviction of the globally oldest item.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        max_size: Optional[int] = None,
        is_online: Optional[Callable[[], bool]] = None,
        sync_requester: Optional[Callable[[], Any]] = None,
    ):
        self._session_factory = session_factory
        self.max_size = max_size if max_size is not None else settings.MAX_QUEUE_SIZE
        self.is_online = is_online
        self.sync_requester = sync_requester

    @contextmanager
    def _session(self):
        factory = self._session_factory or get_sessionmaker()
        db: Session = factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Insertion ──────────────────────────────────────────────────────────

    def enqueue(self, item: Dict[str, Any]) -> str:
        """
        Add an item to the queue and return its optimistic id.

        ``item`` needs ``type`` and ``payload``; ``id``, ``created_at`` and
        ``optimistic_id`` are generated when absent. At capacity the oldest
        item by ``created_at`` is evicted first, whatever its status.
        """
        optimistic_id = item.get("optimistic_id") or generate_uuid()
        with self._session() as db:
            if db.query(QueueItem).count() >= self.max_size:
                oldest = db.query(QueueItem).order_by(QueueItem.created_at).first()
                if oldest is not None:
                    logger.warning(
                        "Offline queue full (%d items), evicting oldest item %s (%s, %s)",
                        self.max_size, oldest.id, oldest.type, oldest.status,
                    )
                    db.delete(oldest)
                    db.flush()

            record = QueueItem(
                id=item.get("id") or generate_uuid(),
                type=item["type"],
                payload=dict(item.get("payload") or {}),
                status=QueueStatus.PENDING.value,
                created_at=now_ms() if item.get("created_at") is None else item["created_at"],
                retries=0,
                optimistic_id=optimistic_id,
                base_version=item.get("base_version"),
                local_changes=item.get("local_changes"),
            )
            db.add(record)
            db.commit()
            logger.info("Queued %s item %s (optimistic_id=%s)", record.type, record.id, optimistic_id)

        self._request_background_sync()
        return optimistic_id

    def _request_background_sync(self) -> None:
        """Fire-and-forget sync request; its outcome never affects enqueue."""
        if self.sync_requester is None or self.is_online is None:
            return
        try:
            if self.is_online():
                self.sync_requester()
        except Exception as exc:
            logger.debug("Background sync request failed (ignored): %s", exc)

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._session() as db:
            return db.get(QueueItem, item_id)

    def list_pending(self) -> List[QueueItem]:
        return self._list_by_status(QueueStatus.PENDING.value)

    def list_failed(self) -> List[QueueItem]:
        return self._list_by_status(QueueStatus.FAILED.value)

    def list_all(self) -> List[QueueItem]:
        with self._session() as db:
            return db.query(QueueItem).order_by(QueueItem.created_at).all()

    def _list_by_status(self, status: str) -> List[QueueItem]:
        with self._session() as db:
            return (
                db.query(QueueItem)
                .filter(QueueItem.status == status)
                .order_by(QueueItem.created_at)
                .all()
            )

    def get_pending_count(self) -> int:
        with self._session() as db:
            return db.query(QueueItem).filter(QueueItem.status == QueueStatus.PENDING.value).count()

    def get_queue_count(self) -> int:
        with self._session() as db:
            return db.query(QueueItem).count()

    # ── Mutations ──────────────────────────────────────────────────────────

    def set_status(self, item_id: str, status: str, error: Optional[str] = None) -> None:
        status = QueueStatus(status).value
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return
            item.status = status
            item.error = error
            if status in TERMINAL_STATUSES:
                item.processed_at = now_ms()
            db.commit()

    def increment_retries(self, item_id: str) -> int:
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return 0
            item.retries += 1
            db.commit()
            return item.retries

    def remove(self, item_id: str) -> None:
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is not None:
                db.delete(item)
                db.commit()

    def clear_completed(self) -> int:
        with self._session() as db:
            removed = (
                db.query(QueueItem)
                .filter(QueueItem.status == QueueStatus.COMPLETED.value)
                .delete(synchronize_session=False)
            )
            db.commit()
            return removed

    def reset_for_retry(self, item_id: str) -> None:
        """Manual retry: back to pending with a clean retry count."""
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return
            _reset(item)
            db.commit()

    def reset_all_failed(self) -> int:
        with self._session() as db:
            failed = db.query(QueueItem).filter(QueueItem.status == QueueStatus.FAILED.value).all()
            for item in failed:
                _reset(item)
            db.commit()
            if failed:
                logger.info("Reset %d failed queue items for retry", len(failed))
            return len(failed)

    def update_payload(self, item_id: str, changes: Dict[str, Any]) -> None:
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return
            # JSON columns are not mutation-tracked, so assign a new dict
            item.payload = {**(item.payload or {}), **changes}
            db.commit()

    def update_item(self, item_id: str, **changes: Any) -> None:
        """Update bookkeeping columns such as server_response or conflict_data."""
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return
            for key, value in changes.items():
                if not hasattr(QueueItem, key):
                    raise AttributeError(f"QueueItem has no field {key!r}")
                setattr(item, key, value)
            db.commit()

    def set_awaiting_confirmation(self, item_id: str, transcription: str) -> None:
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return
            item.status = QueueStatus.AWAITING_CONFIRMATION.value
            item.payload = {**(item.payload or {}), "transcription": transcription}
            item.retries = 0
            item.error = None
            db.commit()

    def confirm_transcription(self, item_id: str, transcription: str) -> None:
        with self._session() as db:
            item = db.get(QueueItem, item_id)
            if item is None:
                return
            item.payload = {
                **(item.payload or {}),
                "transcription": transcription,
                "transcription_confirmed": True,
            }
            item.status = QueueStatus.PENDING.value
            db.commit()


def _reset(item: QueueItem) -> None:
    item.status = QueueStatus.PENDING.value
    item.retries = 0
    item.error = None


offline_queue = OfflineQueue()
