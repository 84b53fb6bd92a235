import time
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import settings

Base = declarative_base()

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def generate_uuid() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class TimestampMixin:
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url)


def get_engine() -> Engine:
    """Lazily create the local queue database engine (memoized)."""
    global _engine
    if _engine is None:
        _engine = _build_engine(settings.DATABASE_URL)
    return _engine


def get_sessionmaker() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=get_engine()
        )
    return _SessionLocal


def init_db() -> None:
    """Create local tables. Alembic migrations are preferred outside dev."""
    from . import queue_item, conflict  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def reset_engine(url: Optional[str] = None) -> None:
    """Drop the memoized engine, optionally rebinding to a new URL (tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(url) if url else None
    _SessionLocal = None
