from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    APP_NAME: str = "HerdSync Offline Sync Agent"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Local embedded queue database (device-side)
    DATABASE_URL: str = "sqlite:///./herdsync_queue.db"

    # Hosted backend (REST tables, RPC and serverless functions)
    REMOTE_API_URL: Optional[str] = None
    REMOTE_API_KEY: Optional[str] = None
    REMOTE_TIMEOUT: int = 30

    # Offline queue
    MAX_QUEUE_SIZE: int = 50  # oldest item is evicted beyond this

    # Sync processor
    SYNC_MAX_RETRIES: int = 3
    SYNC_RETRY_DELAYS: List[float] = [1.0, 2.0, 4.0]  # exponential backoff, seconds
    AUDIO_SYNC_DELAY_SECONDS: float = 0.5  # pacing for the transcription service
    SYNC_INTERVAL_SECONDS: int = 300  # periodic sync; 0 disables
    REMOVE_COMPLETED_AFTER_SYNC: bool = False

    # Alert thresholds
    STUCK_ITEM_AGE_MINUTES: int = 60
    CRITICAL_STUCK_THRESHOLD: int = 5
    LARGE_QUEUE_THRESHOLD: int = 50

    class Config:
        env_file = ".env"


settings = Settings()
