"""
Sync telemetry.
Records one analytics row per sync pass on the backend. Telemetry is
best-effort: failures are logged and never interrupt a sync.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..models.base import generate_uuid
from .remote_client import RemoteClient, remote_client

logger = logging.getLogger(__name__)

SYNC_ANALYTICS_TABLE = "sync_analytics"


@dataclass
class SyncSession:
    id: str
    sync_type: str
    farm_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class SyncStats:
    items_processed: int
    items_succeeded: int
    items_failed: int
    duration_ms: int


class SyncTelemetry:
    def __init__(self, remote: RemoteClient):
        self.remote = remote
        self.sessions: Dict[str, SyncSession] = {}

    async def start_session(self, farm_id: Optional[str], sync_type: str) -> str:
        session = SyncSession(id=generate_uuid(), sync_type=sync_type, farm_id=farm_id)
        self.sessions[session.id] = session
        try:
            await self.remote.insert(
                SYNC_ANALYTICS_TABLE,
                {
                    "id": session.id,
                    "farm_id": farm_id,
                    "sync_type": sync_type,
                    "started_at": datetime.now(timezone.utc).isoformat(),
                    "items_processed": 0,
                    "items_succeeded": 0,
                    "items_failed": 0,
                },
                returning=False,
            )
        except Exception as exc:
            logger.warning("Sync telemetry session start failed: %s", exc)
        return session.id

    async def record_error(self, session_id: str, error: BaseException) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        session.errors.append(str(error) or error.__class__.__name__)
        try:
            await self.remote.update(
                SYNC_ANALYTICS_TABLE,
                {"error_summary": "; ".join(session.errors[-5:])},
                {"id": session_id},
            )
        except Exception as exc:
            logger.warning("Sync telemetry error record failed: %s", exc)

    async def complete_session(self, session_id: str, stats: SyncStats) -> None:
        self.sessions.pop(session_id, None)
        try:
            await self.remote.update(
                SYNC_ANALYTICS_TABLE,
                {
                    "items_processed": stats.items_processed,
                    "items_succeeded": stats.items_succeeded,
                    "items_failed": stats.items_failed,
                    "duration_ms": stats.duration_ms,
                    "completed_at": datetime.now(timezone.utc).isoformat(),
                },
                {"id": session_id},
            )
        except Exception as exc:
            logger.warning("Sync telemetry session completion failed: %s", exc)


sync_telemetry = SyncTelemetry(remote_client)
