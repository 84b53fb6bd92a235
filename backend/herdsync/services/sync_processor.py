"""
Offline sync processor.

Drains pending queue items one at a time against the hosted backend. Each
item is dispatched on its payload variant; failures are either routed to the
confirmation state (when more user input is needed) or retried with backoff
until the retry cap marks the item failed.

Every insert carries a client_generated_id derived from the item's
optimistic id, so replaying an item after a partial success never creates
duplicate records.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import (
    AUDIO_MISSING,
    DUPLICATE_EAR_TAG,
    FARM_ID_MISSING,
    NEEDS_ANIMAL_SELECTION,
    PAYLOAD_INVALID,
    TRANSCRIPTION_EMPTY,
    TRANSCRIPTION_FAILED,
    RemoteError,
    SyncError,
    error_code,
    inventory_required,
    is_recoverable,
    translate_error,
)
from ..models.queue_item import QueueItem, QueueStatus
from ..schemas.queue import (
    AnimalFormPayload,
    BulkFeedPayload,
    BulkHealthPayload,
    BulkMilkPayload,
    RecordUpdatePayload,
    SingleHealthPayload,
    SingleMilkPayload,
    VoiceActivityPayload,
    VoiceFormInputPayload,
    parse_payload,
)
from .conflict_detection import ConflictDetector, conflict_detector
from .connectivity import ConnectivityMonitor, connectivity_monitor
from .offline_queue import OfflineQueue, offline_queue
from .remote_client import RemoteClient, remote_client
from .sync_telemetry import SyncStats, SyncTelemetry, sync_telemetry

logger = logging.getLogger(__name__)

VOICE_TO_TEXT_FUNCTION = "voice-to-text"
FARMHAND_ACTIVITY_FUNCTION = "process-farmhand-activity"

# Activities that cannot be logged without a target animal
ANIMAL_REQUIRED_ACTIVITIES = ("weight_measurement", "milking", "health_observation", "injection")
DOC_AGA_MARKERS = ("dok aga", "doc aga")


@dataclass
class SyncResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    awaiting: int = 0
    skipped: int = 0
    stopped_offline: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class SyncProcessor:
    """Sequential, at-least-once replay of queued operations."""

    def __init__(
        self,
        queue: OfflineQueue,
        remote: RemoteClient,
        connectivity: ConnectivityMonitor,
        conflicts: Optional[ConflictDetector] = None,
        telemetry: Optional[SyncTelemetry] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        max_retries: Optional[int] = None,
        retry_delays: Optional[List[float]] = None,
        audio_delay: Optional[float] = None,
        remove_completed: Optional[bool] = None,
    ):
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.conflicts = conflicts or ConflictDetector(remote)
        self.telemetry = telemetry or SyncTelemetry(remote)
        self._sleep = sleep or asyncio.sleep
        self.max_retries = max_retries if max_retries is not None else settings.SYNC_MAX_RETRIES
        self.retry_delays = retry_delays if retry_delays is not None else settings.SYNC_RETRY_DELAYS
        self.audio_delay = audio_delay if audio_delay is not None else settings.AUDIO_SYNC_DELAY_SECONDS
        self.remove_completed = (
            remove_completed if remove_completed is not None else settings.REMOVE_COMPLETED_AFTER_SYNC
        )
        self._syncing = False

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    # ── Batch ──────────────────────────────────────────────────────────────

    async def sync_queue(self, sync_type: str = "manual") -> SyncResult:
        """
        Process every pending item in order.

        One item's failure never aborts the batch; losing connectivity stops it
        between items and leaves the rest pending. A pass already running in
        this process makes the call a no-op.
        """
        result = SyncResult()
        if self._syncing:
            logger.info("Sync already in progress, skipping %s sync", sync_type)
            return result

        self._syncing = True
        started = time.monotonic()
        try:
            pending = self.queue.list_pending()
            if not pending:
                logger.debug("No pending items to sync")
                return result

            logger.info("Starting %s sync of %d pending items", sync_type, len(pending))
            farm_id = (pending[0].payload or {}).get("farm_id")
            session_id = await self.telemetry.start_session(farm_id, sync_type)

            for item in pending:
                if not self.connectivity.is_online():
                    logger.info("Lost connectivity, stopping sync with items left pending")
                    result.stopped_offline = True
                    break
                await self._process_item(item, session_id, result)

            await self.telemetry.complete_session(
                session_id,
                SyncStats(
                    items_processed=result.processed,
                    items_succeeded=result.succeeded,
                    items_failed=result.failed,
                    duration_ms=int((time.monotonic() - started) * 1000),
                ),
            )
            logger.info(
                "Sync finished: %d succeeded, %d failed, %d awaiting confirmation, %d skipped",
                result.succeeded, result.failed, result.awaiting, result.skipped,
            )
            return result
        finally:
            self._syncing = False

    async def retry_failed(self) -> int:
        """Reset every failed item and run a sync pass when online."""
        count = self.queue.reset_all_failed()
        if count and self.connectivity.is_online():
            await self.sync_queue("manual")
        return count

    # ── Single item ────────────────────────────────────────────────────────

    async def _process_item(self, item: QueueItem, session_id: str, result: SyncResult) -> None:
        try:
            try:
                payload = parse_payload(item.type, item.payload)
            except ValidationError as exc:
                raise SyncError(PAYLOAD_INVALID, str(exc)) from exc

            if isinstance(payload, VoiceActivityPayload):
                if payload.transcription and not payload.transcription_confirmed:
                    logger.info("Item %s awaiting transcription confirmation, skipping", item.id)
                    result.skipped += 1
                    return
                if not payload.transcription:
                    # Transcribe first; the activity is replayed once confirmed
                    text = await self._transcribe(payload.audio_base64)
                    self.queue.set_awaiting_confirmation(item.id, text)
                    result.awaiting += 1
                    await self._sleep(self.audio_delay)
                    return

            result.processed += 1
            self.queue.set_status(item.id, QueueStatus.PROCESSING)
            response = await self._dispatch(item, payload)
            if response is not None:
                self.queue.update_item(item.id, server_response=response)
            self.queue.set_status(item.id, QueueStatus.COMPLETED)
            if self.remove_completed:
                self.queue.remove(item.id)
            result.succeeded += 1
            logger.info("Synced %s item %s", item.type, item.id)
        except Exception as exc:
            await self._handle_failure(item, exc, session_id, result)

    async def _handle_failure(
        self, item: QueueItem, exc: Exception, session_id: str, result: SyncResult
    ) -> None:
        code = error_code(exc)
        if is_recoverable(code):
            logger.info("Item %s needs user input (%s)", item.id, code)
            self.queue.set_status(item.id, QueueStatus.AWAITING_CONFIRMATION, code)
            result.awaiting += 1
            return

        logger.warning("Failed to sync %s item %s: %s", item.type, item.id, exc)
        result.failed += 1
        await self.telemetry.record_error(session_id, exc)

        message = translate_error(exc)
        retries = self.queue.increment_retries(item.id)
        if retries >= self.max_retries:
            logger.error("Item %s failed permanently after %d attempts", item.id, retries)
            self.queue.set_status(item.id, QueueStatus.FAILED, message)
            return

        if self.retry_delays:
            delay = self.retry_delays[min(retries - 1, len(self.retry_delays) - 1)]
            await self._sleep(delay)
        self.queue.set_status(item.id, QueueStatus.PENDING, message)

    async def _dispatch(self, item: QueueItem, payload) -> Any:
        if isinstance(payload, AnimalFormPayload):
            return await self._sync_animal_form(item, payload)
        if isinstance(payload, BulkMilkPayload):
            return await self._sync_bulk_milk(item, payload)
        if isinstance(payload, SingleMilkPayload):
            return await self._sync_single_milk(item, payload)
        if isinstance(payload, BulkFeedPayload):
            return await self._sync_bulk_feed(item, payload)
        if isinstance(payload, BulkHealthPayload):
            return await self._sync_bulk_health(item, payload)
        if isinstance(payload, SingleHealthPayload):
            return await self._sync_single_health(item, payload)
        if isinstance(payload, VoiceActivityPayload):
            return await self._sync_voice_activity(item, payload)
        if isinstance(payload, VoiceFormInputPayload):
            return await self._sync_voice_form_input(item, payload)
        if isinstance(payload, RecordUpdatePayload):
            return await self._sync_record_update(item, payload)
        raise TypeError(f"Unhandled queue payload {type(payload).__name__}")

    # ── Shared helpers ─────────────────────────────────────────────────────

    async def _insert_idempotent(self, table: str, rows: Any) -> Optional[List[Dict[str, Any]]]:
        """Insert rows; None means the rows were already synced by an earlier attempt."""
        try:
            return await self.remote.insert(table, rows)
        except RemoteError as exc:
            if exc.is_duplicate_client_id:
                logger.info("Records for %s already synced (duplicate client id), skipping", table)
                return None
            raise

    async def _transcribe(self, audio_base64: Optional[str]) -> str:
        if not audio_base64:
            raise SyncError(AUDIO_MISSING)
        try:
            data = await self.remote.invoke(VOICE_TO_TEXT_FUNCTION, {"audio": audio_base64})
        except RemoteError as exc:
            raise SyncError(TRANSCRIPTION_FAILED, exc.message) from exc
        text = (data or {}).get("text")
        if not text:
            raise SyncError(TRANSCRIPTION_EMPTY)
        return text

    @staticmethod
    def _client_id(item: QueueItem, kind: str, index: int = 0) -> str:
        return f"{item.optimistic_id}_{kind}_{index}"

    # ── Handlers ───────────────────────────────────────────────────────────

    async def _sync_animal_form(self, item: QueueItem, payload: AnimalFormPayload):
        form = dict(payload.form_data)
        if not form:
            raise SyncError(PAYLOAD_INVALID, "No form data in queue item")
        form.pop("created_by", None)
        client_id = form.get("client_generated_id") or self._client_id(item, "animal")
        farm_id = form.get("farm_id") or payload.farm_id

        if form.get("ear_tag"):
            existing = await self.remote.select_one(
                "animals",
                {"farm_id": farm_id, "ear_tag": form["ear_tag"], "is_deleted": False},
                columns="id,client_generated_id",
            )
            if existing:
                if existing.get("client_generated_id") == client_id:
                    logger.info("Animal for item %s already synced, skipping", item.id)
                    return existing
                raise SyncError(DUPLICATE_EAR_TAG, form["ear_tag"])

        rows = await self._insert_idempotent("animals", {**form, "client_generated_id": client_id})
        if not rows:
            return None
        animal = rows[0]

        # Follow-up records must not fail an animal that is already created
        ai = payload.ai_info
        if ai is not None:
            technician = f"{ai.ai_bull_brand or ''} {ai.ai_bull_reference or ''}".strip() or "Unknown"
            try:
                await self.remote.insert("ai_records", {
                    "animal_id": animal["id"],
                    "performed_date": ai.birth_date,
                    "technician": technician,
                    "pregnancy_confirmed": True,
                    "confirmed_at": datetime.now(timezone.utc).isoformat(),
                    "notes": (
                        f"Bull Brand: {ai.ai_bull_brand or 'N/A'}, "
                        f"Reference: {ai.ai_bull_reference or 'N/A'}, "
                        f"Breed: {ai.ai_bull_breed or 'N/A'}"
                    ),
                }, returning=False)
            except RemoteError as exc:
                logger.warning("Failed to create AI record for animal %s: %s", animal["id"], exc)

        weight = payload.initial_weight
        if weight is not None:
            try:
                await self.remote.insert("weight_records", {
                    "animal_id": animal["id"],
                    "weight_kg": weight.weight_kg,
                    "measurement_date": weight.measurement_date,
                    "measurement_method": "entry_weight" if weight.type == "entry" else "birth_weight",
                    "notes": "Initial weight at farm entry" if weight.type == "entry" else "Birth weight",
                }, returning=False)
            except RemoteError as exc:
                logger.warning("Failed to create weight record for animal %s: %s", animal["id"], exc)

        return animal

    async def _sync_bulk_milk(self, item: QueueItem, payload: BulkMilkPayload):
        if not payload.milk_records or not payload.farm_id:
            raise SyncError(PAYLOAD_INVALID, "No milk records in queue item")
        records = [
            {
                "animal_id": record.animal_id,
                "record_date": record.record_date,
                "liters": record.liters,
                "session": record.session,
                "is_sold": False,
                "client_generated_id": self._client_id(item, "milk", index),
            }
            for index, record in enumerate(payload.milk_records)
        ]
        return await self._insert_idempotent("milking_records", records)

    async def _sync_single_milk(self, item: QueueItem, payload: SingleMilkPayload):
        record = payload.single_milk
        if record is None or not payload.farm_id:
            raise SyncError(PAYLOAD_INVALID, "No single milk data in queue item")
        return await self._insert_idempotent("milking_records", {
            "animal_id": record.animal_id,
            "record_date": record.record_date,
            "liters": record.liters,
            "session": record.session,
            "is_sold": False,
            "client_generated_id": self._client_id(item, "milk"),
        })

    async def _sync_bulk_feed(self, item: QueueItem, payload: BulkFeedPayload):
        if not payload.feed_records or not payload.farm_id or not payload.feed_type:
            raise SyncError(PAYLOAD_INVALID, "No feed records in queue item")
        record_datetime = payload.record_date or datetime.now(timezone.utc).isoformat()
        records = [
            {
                "animal_id": record.animal_id,
                "record_datetime": record_datetime,
                "kilograms": record.kilograms,
                "feed_type": payload.feed_type,
                "client_generated_id": self._client_id(item, "feed", index),
            }
            for index, record in enumerate(payload.feed_records)
        ]
        inserted = await self._insert_idempotent("feeding_records", records)
        if inserted is None:
            # Inventory and expenses were applied with the first successful insert
            return None

        if payload.feed_inventory_id and payload.total_kg:
            current = await self.remote.select_one(
                "feed_inventory", {"id": payload.feed_inventory_id}, columns="quantity_kg"
            )
            if current is not None:
                new_quantity = max(0.0, float(current["quantity_kg"]) - payload.total_kg)
                await self.remote.update(
                    "feed_inventory",
                    {"quantity_kg": new_quantity, "last_updated": datetime.now(timezone.utc).isoformat()},
                    {"id": payload.feed_inventory_id},
                )
                await self.remote.insert("feed_stock_transactions", {
                    "feed_inventory_id": payload.feed_inventory_id,
                    "transaction_type": "consumption",
                    "quantity_change_kg": -payload.total_kg,
                    "balance_after": new_quantity,
                    "notes": f"Offline sync: Bulk feeding {len(payload.feed_records)} animals",
                }, returning=False)

        expense_date = record_datetime[:10]
        expenses = [
            {
                "animal_id": record.animal_id,
                "farm_id": payload.farm_id,
                "category": "Feed & Supplements",
                "amount": record.cost,
                "description": f"{payload.feed_type} feeding: {record.kilograms:.2f} kg",
                "expense_date": expense_date,
                "allocation_type": "Operational",
                "linked_feed_inventory_id": payload.feed_inventory_id,
            }
            for record in payload.feed_records
            if record.cost and record.cost > 0
        ]
        if expenses:
            await self.remote.insert("farm_expenses", expenses, returning=False)

        return inserted

    async def _sync_bulk_health(self, item: QueueItem, payload: BulkHealthPayload):
        if not payload.health_records or not payload.diagnosis or not payload.farm_id:
            raise SyncError(PAYLOAD_INVALID, "No health records in queue item")
        visit_date = (payload.record_date or _today())[:10]
        records = [
            {
                "animal_id": record.animal_id,
                "visit_date": visit_date,
                "diagnosis": payload.diagnosis,
                "treatment": payload.treatment,
                "notes": payload.notes,
                "client_generated_id": self._client_id(item, "health", index),
            }
            for index, record in enumerate(payload.health_records)
        ]
        return await self._insert_idempotent("health_records", records)

    async def _sync_single_health(self, item: QueueItem, payload: SingleHealthPayload):
        record = payload.single_health
        if record is None or not payload.farm_id:
            raise SyncError(PAYLOAD_INVALID, "No single health data in queue item")
        return await self._insert_idempotent("health_records", {
            "animal_id": record.animal_id,
            "visit_date": record.visit_date[:10],
            "category": record.category,
            "diagnosis": record.diagnosis,
            "treatment": record.treatment,
            "notes": record.notes,
            "client_generated_id": self._client_id(item, "health"),
        })

    async def _sync_voice_activity(self, item: QueueItem, payload: VoiceActivityPayload):
        if not payload.farm_id:
            raise SyncError(FARM_ID_MISSING)

        if payload.transcription and payload.transcription_confirmed:
            text = payload.transcription
        else:
            text = await self._transcribe(payload.audio_base64)

        if any(marker in text.lower() for marker in DOC_AGA_MARKERS):
            # Assistant queries are answered elsewhere, not logged as activities
            logger.info("Item %s is an assistant query, not a farm activity", item.id)
            return None

        animal_context = payload.animal_context.model_dump() if payload.animal_context else None
        if animal_context is None and payload.animal_id:
            animal_context = await self._lookup_animal_context(payload.animal_id)

        activity = await self.remote.invoke(FARMHAND_ACTIVITY_FUNCTION, {
            "transcription": text,
            "farmId": payload.farm_id,
            "animalId": payload.animal_id,
            "animalContext": animal_context,
            "clientGeneratedId": self._client_id(item, "activity"),
        }) or {}

        if activity.get("error"):
            if activity["error"] == "FEED_TYPE_NOT_IN_INVENTORY":
                raise SyncError(inventory_required(activity.get("feed_type", "unknown")))
            raise RemoteError(activity.get("message") or activity["error"])

        if (
            activity.get("activity_type") in ANIMAL_REQUIRED_ACTIVITIES
            and not activity.get("animal_id")
            and activity.get("needs_animal_selection")
        ):
            raise SyncError(NEEDS_ANIMAL_SELECTION)

        return activity

    async def _lookup_animal_context(self, animal_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.remote.select_one(
                "animals",
                {"id": animal_id},
                columns="name,ear_tag,gender,breed,birth_date,life_stage",
            )
        except RemoteError as exc:
            # The activity function can look the animal up itself
            logger.warning("Animal context lookup failed for %s: %s", animal_id, exc)
            return None

    async def _sync_voice_form_input(self, item: QueueItem, payload: VoiceFormInputPayload):
        text = payload.transcription
        if not text:
            text = await self._transcribe(payload.audio_base64)
            self.queue.update_payload(item.id, {"transcription": text})
            await self._sleep(self.audio_delay)
        return {
            "form_type": payload.form_type,
            "dialog_id": payload.dialog_id,
            "extractor_type": payload.extractor_type,
            "transcription": text,
        }

    async def _sync_record_update(self, item: QueueItem, payload: RecordUpdatePayload):
        if not payload.farm_id:
            raise SyncError(FARM_ID_MISSING)
        base = payload.base_updated_at if payload.base_updated_at else item.base_version
        outcome = await self.conflicts.reconcile_update(
            payload.farm_id, payload.table_name, payload.record_id, payload.changes, base,
            changed_at=item.created_at,
        )
        if outcome.had_conflict:
            self.queue.update_item(
                item.id,
                conflict_data={"conflict_id": outcome.conflict_id, "merged": outcome.merged},
            )
        return outcome.applied


sync_processor = SyncProcessor(
    offline_queue,
    remote_client,
    connectivity_monitor,
    conflicts=conflict_detector,
    telemetry=sync_telemetry,
)
