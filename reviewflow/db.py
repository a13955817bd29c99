# reviewflow/db.py  (SYNC ONLY)

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator

from reviewflow.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return "sqlite:///./data/app.db"

    # Railway/Heroku suelen dar postgres:// (SQLAlchemy prefiere postgresql+psycopg2://)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)

    # si llega async por error, conviértelo a sync
    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)

    return url


def make_engine(url: str):
    url = normalize_database_url(url)
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        path = url.split(":///", 1)[1] if ":///" in url else ""
        if path and path != ":memory:" and "/" in path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True, future=True)


DATABASE_URL = normalize_database_url(settings.DATABASE_URL)

engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    future=True,
)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Datetimes UTC con tz en cualquier backend.

    SQLite pierde el tzinfo: lo que vuelve naive se marca como UTC.
    Los naive que llegan desde Python se asumen UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Para los procesos (dispatcher, recovery) que abren una sesión por item."""
    return SessionLocal
