# reviewflow/telemetry.py
import logging
from typing import Any, Optional

from sqlalchemy import Column, Integer, JSON, String, Index
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from reviewflow.db import Base, UTCDateTime

logger = logging.getLogger(__name__)


class TelemetryEvent(Base):
    """Log append-only. Solo observabilidad, nunca control de flujo."""

    __tablename__ = "telemetry_events"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)


Index("ix_telemetry_business_type", TelemetryEvent.business_id, TelemetryEvent.event_type)


def log_event(
    db: Session,
    *,
    business_id: Optional[int],
    event_type: str,
    data: Optional[dict[str, Any]] = None,
) -> TelemetryEvent:
    """Añade el evento a la sesión; lo persiste el commit de quien llama."""
    ev = TelemetryEvent(business_id=business_id, event_type=event_type, event_data=data or {})
    db.add(ev)
    logger.debug("[telemetry] business=%s %s %s", business_id, event_type, data or {})
    return ev


def list_events(db: Session, *, business_id: int, event_type: Optional[str] = None) -> list[TelemetryEvent]:
    q = db.query(TelemetryEvent).filter(TelemetryEvent.business_id == business_id)
    if event_type:
        q = q.filter(TelemetryEvent.event_type == event_type)
    return q.order_by(TelemetryEvent.id.asc()).all()
