from sqlalchemy import Column, String, DateTime, JSON
from .base import Base, TimestampMixin, generate_uuid


class ResolutionStrategy:
    PENDING = "pending"
    CLIENT_WINS = "client_wins"
    SERVER_WINS = "server_wins"
    MERGED = "merged"

    APPLICABLE = [CLIENT_WINS, SERVER_WINS, MERGED]


class SyncConflict(Base, TimestampMixin):
    """Audit record of a divergence between a local edit and the server copy."""
    __tablename__ = "sync_conflicts"

    id = Column(String, primary_key=True, default=generate_uuid)
    farm_id = Column(String(64), nullable=False, index=True)
    table_name = Column(String(100), nullable=False)
    record_id = Column(String(64), nullable=False)
    client_data = Column(JSON, nullable=False)
    server_data = Column(JSON, nullable=False)
    resolution = Column(String(20), nullable=False, default=ResolutionStrategy.PENDING, index=True)
    resolved_data = Column(JSON, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
