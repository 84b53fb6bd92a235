from enum import Enum

from sqlalchemy import Column, String, Text, Integer, BigInteger, JSON
from .base import Base, generate_uuid, now_ms


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueItemType(str, Enum):
    VOICE_ACTIVITY = "voice_activity"
    ANIMAL_FORM = "animal_form"
    BULK_MILK = "bulk_milk"
    SINGLE_MILK = "single_milk"
    BULK_FEED = "bulk_feed"
    BULK_HEALTH = "bulk_health"
    SINGLE_HEALTH = "single_health"
    VOICE_FORM_INPUT = "voice_form_input"
    RECORD_UPDATE = "record_update"


TERMINAL_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)


class QueueItem(Base):
    """A deferred offline operation waiting to be replayed against the backend."""
    __tablename__ = "offline_queue"

    id = Column(String, primary_key=True, default=generate_uuid)
    type = Column(String(40), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(30), nullable=False, default=QueueStatus.PENDING.value, index=True)
    created_at = Column(BigInteger, nullable=False, default=now_ms, index=True)  # epoch ms
    processed_at = Column(BigInteger, nullable=True)
    retries = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    # Optimistic UI correlation; preserved unchanged for the item's lifetime
    optimistic_id = Column(String, nullable=False, index=True)
    server_response = Column(JSON, nullable=True)
    conflict_data = Column(JSON, nullable=True)

    # Captured when an edit began, for conflict detection
    base_version = Column(BigInteger, nullable=True)
    local_changes = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<QueueItem {self.id} {self.type} {self.status} retries={self.retries}>"
