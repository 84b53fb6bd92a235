"""
Queue payload variants and API models.

Each queue item type has its own payload model; together they form a tagged
union discriminated on ``type``. The stored JSON payload never includes the tag,
it is taken from the item's ``type`` column when parsing.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class AnimalContext(BaseModel):
    name: str
    ear_tag: str
    gender: Optional[str] = None
    breed: Optional[str] = None
    birth_date: Optional[str] = None
    life_stage: Optional[str] = None
    farm_entry_date: Optional[str] = None


class MilkRecord(BaseModel):
    animal_id: str
    animal_name: Optional[str] = None
    ear_tag: Optional[str] = None
    liters: float
    record_date: str
    session: Literal["AM", "PM"]


class FeedRecord(BaseModel):
    animal_id: str
    animal_name: Optional[str] = None
    kilograms: float
    cost: Optional[float] = None


class HealthTarget(BaseModel):
    animal_id: str
    animal_name: Optional[str] = None


class SingleHealth(BaseModel):
    animal_id: str
    animal_name: Optional[str] = None
    visit_date: str
    category: Optional[str] = None
    diagnosis: str
    treatment: Optional[str] = None
    notes: Optional[str] = None


class AIInfo(BaseModel):
    ai_bull_brand: Optional[str] = None
    ai_bull_reference: Optional[str] = None
    ai_bull_breed: Optional[str] = None
    birth_date: Optional[str] = None


class InitialWeight(BaseModel):
    type: Literal["entry", "birth"]
    weight_kg: float
    measurement_date: str


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    farm_id: Optional[str] = None


class BulkMilkPayload(_PayloadBase):
    type: Literal["bulk_milk"] = "bulk_milk"
    milk_records: List[MilkRecord] = []


class SingleMilkPayload(_PayloadBase):
    type: Literal["single_milk"] = "single_milk"
    single_milk: Optional[MilkRecord] = None


class BulkFeedPayload(_PayloadBase):
    type: Literal["bulk_feed"] = "bulk_feed"
    feed_records: List[FeedRecord] = []
    feed_type: Optional[str] = None
    feed_inventory_id: Optional[str] = None
    total_kg: Optional[float] = None
    record_date: Optional[str] = None


class BulkHealthPayload(_PayloadBase):
    type: Literal["bulk_health"] = "bulk_health"
    health_records: List[HealthTarget] = []
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None
    record_date: Optional[str] = None


class SingleHealthPayload(_PayloadBase):
    type: Literal["single_health"] = "single_health"
    single_health: Optional[SingleHealth] = None


class VoiceActivityPayload(_PayloadBase):
    type: Literal["voice_activity"] = "voice_activity"
    audio_base64: Optional[str] = None
    animal_id: Optional[str] = None
    animal_context: Optional[AnimalContext] = None
    timestamp: Optional[int] = None
    transcription: Optional[str] = None
    transcription_confirmed: bool = False


class AnimalFormPayload(_PayloadBase):
    type: Literal["animal_form"] = "animal_form"
    form_data: Dict[str, Any] = {}
    ai_info: Optional[AIInfo] = None
    initial_weight: Optional[InitialWeight] = None


class VoiceFormInputPayload(_PayloadBase):
    type: Literal["voice_form_input"] = "voice_form_input"
    audio_base64: Optional[str] = None
    extractor_type: Literal["milk", "feed", "text", "custom"] = "text"
    extractor_context: Optional[Dict[str, Any]] = None
    form_type: str = "custom"
    dialog_id: Optional[str] = None
    transcription: Optional[str] = None
    transcription_confirmed: bool = False


class RecordUpdatePayload(_PayloadBase):
    type: Literal["record_update"] = "record_update"
    table_name: str
    record_id: str
    changes: Dict[str, Any]
    base_updated_at: Optional[str] = None  # ISO timestamp the edit was based on


QueuePayload = Annotated[
    Union[
        BulkMilkPayload,
        SingleMilkPayload,
        BulkFeedPayload,
        BulkHealthPayload,
        SingleHealthPayload,
        VoiceActivityPayload,
        AnimalFormPayload,
        VoiceFormInputPayload,
        RecordUpdatePayload,
    ],
    Field(discriminator="type"),
]

_payload_adapter = TypeAdapter(QueuePayload)


def parse_payload(item_type: str, payload: Dict[str, Any]):
    """Validate a stored payload into the variant selected by ``item_type``."""
    data = dict(payload or {})
    data["type"] = item_type
    return _payload_adapter.validate_python(data)


# ── API models ────────────────────────────────────────────────────────────


class QueueItemCreate(BaseModel):
    id: Optional[str] = None
    type: str
    payload: Dict[str, Any]
    created_at: Optional[int] = None
    optimistic_id: Optional[str] = None
    base_version: Optional[int] = None
    local_changes: Optional[Dict[str, Any]] = None


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    payload: Dict[str, Any]
    status: str
    created_at: int
    processed_at: Optional[int]
    retries: int
    error: Optional[str]
    optimistic_id: str
    server_response: Optional[Any] = None
    conflict_data: Optional[Any] = None


class TranscriptionConfirm(BaseModel):
    transcription: str


class SyncResultResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    awaiting: int
    skipped: int
    stopped_offline: bool
