"""
Conflict detection and resolution.

A local edit is checked against the server's current copy of the record
before it is applied. When the server changed after the edit was based, the
two are merged field by field (last writer wins per field) and a conflict
record is kept for manual review.
"""
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from ..models.base import get_sessionmaker, generate_uuid
from ..models.conflict import SyncConflict, ResolutionStrategy
from .remote_client import RemoteClient, remote_client

logger = logging.getLogger(__name__)

DETECT_CONFLICT_RPC = "detect_sync_conflict"

Timestamp = Union[str, datetime, int, float]

_MISSING = object()


@dataclass
class ConflictInfo:
    has_conflict: bool
    server_data: Optional[Dict[str, Any]]
    server_updated_at: Optional[str]


@dataclass
class ReconcileResult:
    applied: Dict[str, Any]
    merged: Dict[str, Any]
    conflict_id: Optional[str] = None

    @property
    def had_conflict(self) -> bool:
        return self.conflict_id is not None


# Postgres trims trailing zeros from fractions and may send a bare hour offset
_FRACTION = re.compile(r"\.(\d+)")
_HOUR_OFFSET = re.compile(r"(:\d{2}(?:\.\d+)?[+-]\d{2})$")


def _parse_iso(value: str) -> datetime:
    value = value.strip().replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    value = _HOUR_OFFSET.sub(r"\1:00", value)
    return datetime.fromisoformat(value)


def to_epoch_ms(value: Timestamp) -> int:
    """Normalise ISO strings, datetimes and epoch milliseconds."""
    if isinstance(value, bool):
        raise TypeError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        value = _parse_iso(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def merge_records(
    client_data: Dict[str, Any],
    server_data: Dict[str, Any],
    client_timestamp: Timestamp,
    server_timestamp: Timestamp,
) -> Dict[str, Any]:
    """
    Field-level last-writer-wins merge.

    Fields on both sides take the value from the strictly newer side; on equal
    timestamps the server wins. Fields present on only one side are carried
    through unchanged.
    """
    client_newer = to_epoch_ms(client_timestamp) > to_epoch_ms(server_timestamp)
    merged = dict(server_data)
    for key, value in client_data.items():
        if key not in server_data or client_newer:
            merged[key] = value
    return merged


def _to_dict(conflict: SyncConflict) -> Dict[str, Any]:
    return {
        "id": conflict.id,
        "farm_id": conflict.farm_id,
        "table_name": conflict.table_name,
        "record_id": conflict.record_id,
        "client_data": conflict.client_data,
        "server_data": conflict.server_data,
        "resolution": conflict.resolution,
        "resolved_data": conflict.resolved_data,
        "created_at": conflict.created_at,
        "resolved_at": conflict.resolved_at,
    }


class ConflictDetector:
    def __init__(self, remote: RemoteClient, session_factory: Optional[sessionmaker] = None):
        self.remote = remote
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = (self._session_factory or get_sessionmaker())()
        try:
            yield db
        finally:
            db.close()

    async def detect_conflict(
        self,
        table_name: str,
        record_id: str,
        local_timestamp: Timestamp,
        local_data: Dict[str, Any],
    ) -> ConflictInfo:
        """Ask the backend whether the record changed after ``local_timestamp``.

        Backend failures propagate to the caller.
        """
        if not isinstance(local_timestamp, str):
            local_timestamp = datetime.fromtimestamp(
                to_epoch_ms(local_timestamp) / 1000, tz=timezone.utc
            ).isoformat()
        result = await self.remote.rpc(
            DETECT_CONFLICT_RPC,
            {
                "p_table_name": table_name,
                "p_record_id": record_id,
                "p_client_timestamp": local_timestamp,
                "p_client_data": local_data,
            },
        ) or {}
        return ConflictInfo(
            has_conflict=bool(result.get("has_conflict", False)),
            server_data=result.get("server_data"),
            server_updated_at=result.get("server_updated_at"),
        )

    def record_conflict(
        self,
        farm_id: str,
        table_name: str,
        record_id: str,
        client_data: Dict[str, Any],
        server_data: Dict[str, Any],
    ) -> str:
        with self._session() as db:
            conflict = SyncConflict(
                id=generate_uuid(),
                farm_id=farm_id,
                table_name=table_name,
                record_id=record_id,
                client_data=client_data,
                server_data=server_data,
                resolution=ResolutionStrategy.PENDING,
            )
            db.add(conflict)
            db.commit()
            logger.warning(
                "Sync conflict recorded for %s/%s on farm %s (%s)",
                table_name, record_id, farm_id, conflict.id,
            )
            return conflict.id

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: str,
        merged_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Apply a resolution strategy to the server record and mark the conflict
        resolved. Raises LookupError for an unknown conflict and ValueError for
        an unknown strategy; a failed server write leaves it pending.
        """
        if strategy not in ResolutionStrategy.APPLICABLE:
            raise ValueError(f"Invalid strategy. Choose from: {ResolutionStrategy.APPLICABLE}")

        with self._session() as db:
            conflict = db.get(SyncConflict, conflict_id)
            if conflict is None:
                raise LookupError(f"Conflict {conflict_id} not found")

            if strategy == ResolutionStrategy.CLIENT_WINS:
                data_to_apply = conflict.client_data
            elif strategy == ResolutionStrategy.MERGED:
                data_to_apply = merged_data if merged_data is not None else conflict.client_data
            else:
                # Server already holds the winning copy
                data_to_apply = None

            if data_to_apply is not None:
                await self.remote.update(conflict.table_name, data_to_apply, {"id": conflict.record_id})

            conflict.resolution = strategy
            conflict.resolved_data = merged_data if strategy == ResolutionStrategy.MERGED else None
            conflict.resolved_at = datetime.utcnow()
            db.commit()
            logger.info("Conflict %s resolved with %s", conflict_id, strategy)
            return _to_dict(conflict)

    def get_unresolved_conflicts(self, farm_id: str) -> List[Dict[str, Any]]:
        with self._session() as db:
            rows = (
                db.query(SyncConflict)
                .filter(
                    SyncConflict.farm_id == farm_id,
                    SyncConflict.resolution == ResolutionStrategy.PENDING,
                )
                .order_by(SyncConflict.created_at.desc())
                .all()
            )
            return [_to_dict(c) for c in rows]

    def get_conflict_count(self, farm_id: str) -> int:
        with self._session() as db:
            return (
                db.query(SyncConflict)
                .filter(
                    SyncConflict.farm_id == farm_id,
                    SyncConflict.resolution == ResolutionStrategy.PENDING,
                )
                .count()
            )

    async def reconcile_update(
        self,
        farm_id: str,
        table_name: str,
        record_id: str,
        changes: Dict[str, Any],
        local_timestamp: Optional[Timestamp],
        changed_at: Optional[Timestamp] = None,
    ) -> ReconcileResult:
        """
        Apply a local edit to a shared record.

        ``local_timestamp`` is the server version the edit was based on and
        ``changed_at`` is when the edit was made. Without a concurrent server
        change the edit is written as is. Otherwise the two copies are merged
        with ``changed_at`` as the client's time, the merged record's
        differences from the server copy are written and a pending conflict is
        recorded for manual override.
        """
        if local_timestamp is None:
            await self.remote.update(table_name, changes, {"id": record_id})
            return ReconcileResult(applied=changes, merged=changes)

        info = await self.detect_conflict(table_name, record_id, local_timestamp, changes)
        if not info.has_conflict or info.server_data is None:
            await self.remote.update(table_name, changes, {"id": record_id})
            return ReconcileResult(applied=changes, merged=changes)

        server_data = info.server_data
        client_time = changed_at if changed_at is not None else local_timestamp
        merged = merge_records(
            changes, server_data, client_time, info.server_updated_at or local_timestamp
        )
        applied = {k: v for k, v in merged.items() if server_data.get(k, _MISSING) != v}
        if applied:
            await self.remote.update(table_name, applied, {"id": record_id})
        conflict_id = self.record_conflict(farm_id, table_name, record_id, changes, server_data)
        return ReconcileResult(applied=applied, merged=merged, conflict_id=conflict_id)


conflict_detector = ConflictDetector(remote_client)
