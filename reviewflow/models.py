# reviewflow/models.py
import enum

from sqlalchemy import (
    Boolean, Column, Enum, ForeignKey, Index, Integer, JSON, String, Text
)
from sqlalchemy.sql import func

from reviewflow.db import Base, UTCDateTime


class Business(Base):
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)

    # remitente del email (from) por negocio
    email = Column(String(320), nullable=True)

    # sha256 del token bearer con el que el negocio llama a /trigger
    api_token_hash = Column(String(64), nullable=True, unique=True, index=True)

    # número Twilio propio; si no hay, se usa TWILIO_SMS_FROM
    sms_from_number = Column(String(32), nullable=True)

    # Ejemplo: ChIJrYaFfMAgQg0RwUizaSyFE80
    google_place_id = Column(String(128), nullable=True)
    # Ejemplo: https://search.google.com/local/writereview?placeid=XXXX
    google_review_url = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)

    full_name = Column(String(200), nullable=True)
    email = Column(String(320), nullable=True)
    phone = Column(String(32), nullable=True, index=True)

    sms_opted_out = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)


class TemplateStatus(str, enum.Enum):
    ready = "ready"
    active = "active"
    paused = "paused"


class AutomationTemplate(Base):
    __tablename__ = "automation_templates"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)

    # categoría libre, no única
    key = Column(String(100), nullable=False)
    name = Column(String(200), nullable=False)

    status = Column(Enum(TemplateStatus), nullable=False, default=TemplateStatus.ready)

    # ["email", "sms"] en orden de preferencia
    channels = Column(JSON, nullable=False, default=list)

    # None = vale para cualquier trigger
    trigger_type = Column(String(50), nullable=True)

    # {"message_body": ..., "delay_hours": 24, "delay_days": 1, "keywords": [...], "subject": ...}
    config = Column(JSON, nullable=False, default=dict)
    service_types = Column(JSON, nullable=False, default=list)

    is_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def keywords(self) -> list[str]:
        return list((self.config or {}).get("keywords") or [])

    @property
    def message_body(self) -> str:
        return (self.config or {}).get("message_body") or ""


Index("ix_automation_templates_business_status", AutomationTemplate.business_id, AutomationTemplate.status)


def build_review_url_from_place_id(place_id: str) -> str:
    place_id = (place_id or "").strip()
    return f"https://search.google.com/local/writereview?placeid={place_id}"


def business_review_url(business: Business) -> str:
    """
    URL de reseña del negocio.
    Prioridad:
    1) google_review_url guardada
    2) generar desde google_place_id
    """
    url = (business.google_review_url or "").strip()
    if url:
        return url

    place_id = (business.google_place_id or "").strip()
    if place_id:
        return build_review_url_from_place_id(place_id)

    return ""
