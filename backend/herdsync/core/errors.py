"""
Error taxonomy for the sync pipeline.

RemoteError wraps failures reported by the hosted backend; SyncError carries a
structured code raised by queue handlers. Codes that need more user input are
routed to the confirmation state instead of the retry path.
"""
from typing import Optional

FARM_ID_MISSING = "FARM_ID_MISSING"
AUDIO_MISSING = "AUDIO_MISSING"
TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
TRANSCRIPTION_EMPTY = "TRANSCRIPTION_EMPTY"
NEEDS_ANIMAL_SELECTION = "NEEDS_ANIMAL_SELECTION"
INVENTORY_REQUIRED_PREFIX = "INVENTORY_REQUIRED:"
PAYLOAD_INVALID = "PAYLOAD_INVALID"
DUPLICATE_EAR_TAG = "DUPLICATE_EAR_TAG"

UNIQUE_VIOLATION = "23505"

# Operator-facing text for known codes
ERROR_MESSAGES = {
    FARM_ID_MISSING: "Farm is not set for this recording. Please re-record it from the farm view.",
    AUDIO_MISSING: "The audio recording is missing and cannot be transcribed.",
    TRANSCRIPTION_FAILED: "Transcription service failed. The recording will be retried.",
    TRANSCRIPTION_EMPTY: "No speech was detected in the recording.",
    NEEDS_ANIMAL_SELECTION: "Please select which animal this activity is for.",
    PAYLOAD_INVALID: "The queued data is incomplete and cannot be synced.",
    DUPLICATE_EAR_TAG: "An animal with this ear tag already exists on the farm.",
}


class RemoteError(Exception):
    """Failure reported by the hosted backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def is_duplicate_client_id(self) -> bool:
        """True when a replayed insert hit the client_generated_id unique index."""
        return self.code == UNIQUE_VIOLATION and "client_generated_id" in (self.message or "")

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


class SyncError(Exception):
    """Queue handler failure with a structured code."""

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(code)
        self.code = code
        self.detail = detail


def inventory_required(feed_type: str) -> str:
    return f"{INVENTORY_REQUIRED_PREFIX}{feed_type}"


def is_recoverable(code: Optional[str]) -> bool:
    """Codes that are resolved by user input, never by blind retries."""
    if not code:
        return False
    return code == NEEDS_ANIMAL_SELECTION or code.startswith(INVENTORY_REQUIRED_PREFIX)


def error_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, SyncError):
        return exc.code
    return None


def translate_error(exc: BaseException) -> str:
    """Map an exception to the message kept on a failed queue item."""
    if isinstance(exc, SyncError):
        if exc.code.startswith(INVENTORY_REQUIRED_PREFIX):
            feed_type = exc.code[len(INVENTORY_REQUIRED_PREFIX):]
            return f"Feed type '{feed_type}' is not in inventory. Add it before syncing."
        return ERROR_MESSAGES.get(exc.code, exc.detail or exc.code)
    # Transient failures keep the raw text for diagnosis
    return str(exc) or exc.__class__.__name__
