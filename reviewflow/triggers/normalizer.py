# reviewflow/triggers/normalizer.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from reviewflow.errors import InvalidEvent, TenantMismatch
from reviewflow.models import Customer

logger = logging.getLogger(__name__)

VALID_TRIGGERS = {
    "job_completed",
    "invoice_paid",
    "service_completed",
    "customer_created",
    "payment_received",
    "appointment_completed",
    "estimate_accepted",
    "manual_trigger",
}

# nombres externos (QuickBooks, Jobber, Zapier) -> trigger canónico
EVENT_ALIASES = {
    "invoice.paid": "invoice_paid",
    "payment.received": "payment_received",
    "customer.created": "customer_created",
    "job.completed": "job_completed",
    "job.closed": "job_completed",
    "visit.completed": "service_completed",
    "service.completed": "service_completed",
    "appointment.completed": "appointment_completed",
    "estimate.accepted": "estimate_accepted",
    "quote.approved": "estimate_accepted",
}

# claves del payload de donde sale el texto libre
FREE_TEXT_KEYS = ("description", "service_description", "service_type", "job_title", "title", "notes")


@dataclass(frozen=True)
class TriggerEvent:
    business_id: int
    customer_id: int
    trigger_type: str
    free_text: str
    occurred_at: datetime
    source: str = "manual"
    template_id: Optional[int] = None
    # id externo, timestamp o "untimed:<trigger>"; estable entre reintentos del mismo webhook
    dedup_ref: str = ""
    data: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class RawEvent:
    """Evento tal como llega (llamada manual, webhook CRM, Zapier)."""

    source: str
    event_type: str
    customer_id: Optional[int] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    business_id: Optional[int] = None
    occurred_at: Optional[Any] = None
    data: dict[str, Any] = field(default_factory=dict)


def canonical_trigger_type(event_type: str) -> str:
    name = (event_type or "").strip().lower()
    if not name:
        raise InvalidEvent("missing trigger_type")
    name = EVENT_ALIASES.get(name, name)
    if name not in VALID_TRIGGERS:
        raise InvalidEvent(
            f"invalid trigger_type {event_type!r}. Must be one of: {', '.join(sorted(VALID_TRIGGERS))}"
        )
    return name


def extract_free_text(data: dict[str, Any] | None) -> str:
    data = data or {}
    parts: list[str] = []
    for key in FREE_TEXT_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            parts.append(value.strip())

    for item in data.get("line_items") or []:
        if not isinstance(item, dict):
            continue
        for key in ("description", "name"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                parts.append(value.strip())

    return " ".join(parts)


def parse_occurred_at(value: Any, *, now: datetime) -> datetime:
    if value is None or value == "":
        return now
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidEvent(f"invalid occurred_at {value!r}")
    else:
        raise InvalidEvent(f"invalid occurred_at {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def event_reference(source: str, trigger_type: str, data: dict[str, Any], stamp: Any, occurred_at: datetime) -> str:
    """Referencia para la dedup_key: id del evento externo, timestamp recibido, o "untimed"."""
    external_id = data.get("event_id") or data.get("id")
    if external_id not in (None, ""):
        return f"{source}:{external_id}"
    if stamp not in (None, ""):
        return occurred_at.isoformat()
    # sin id ni timestamp: los reintentos dentro de la ventana comparten clave
    return f"untimed:{trigger_type}"


def resolve_customer(db: Session, raw: RawEvent, *, business_id: int) -> Customer:
    q = db.query(Customer).filter(Customer.business_id == business_id)

    if raw.customer_id is not None:
        customer = q.filter(Customer.id == raw.customer_id).first()
    elif raw.customer_email:
        customer = q.filter(func.lower(Customer.email) == raw.customer_email.strip().lower()).first()
    elif raw.customer_phone:
        customer = q.filter(Customer.phone == raw.customer_phone.strip()).first()
    else:
        raise InvalidEvent("missing customer reference (customer_id, customer_email or customer_phone)")

    if customer is None:
        # no distinguimos "no existe" de "es de otro negocio"
        raise TenantMismatch("customer not found")
    return customer


def normalize(
    db: Session, raw: RawEvent, *, business_id: int, now: Optional[datetime] = None
) -> TriggerEvent:
    """
    RawEvent -> TriggerEvent o InvalidEvent.

    business_id viene del principal autenticado; uno distinto en el payload se rechaza.
    Solo lectura: no escribe nada.
    """
    now = now or datetime.now(timezone.utc)

    if raw.business_id is not None and raw.business_id != business_id:
        raise TenantMismatch("business_id does not belong to caller")

    trigger_type = canonical_trigger_type(raw.event_type)
    customer = resolve_customer(db, raw, business_id=business_id)

    data = dict(raw.data or {})
    stamp = raw.occurred_at if raw.occurred_at is not None else (
        data.get("occurred_at") or data.get("completed_at") or data.get("timestamp")
    )
    occurred_at = parse_occurred_at(stamp, now=now)
    dedup_ref = event_reference(raw.source, trigger_type, data, stamp, occurred_at)

    template_id = None
    if trigger_type == "manual_trigger" and data.get("template_id") not in (None, ""):
        try:
            template_id = int(data["template_id"])
        except (TypeError, ValueError):
            raise InvalidEvent(f"invalid template_id {data['template_id']!r}")

    event = TriggerEvent(
        business_id=business_id,
        customer_id=customer.id,
        trigger_type=trigger_type,
        free_text=extract_free_text(data),
        occurred_at=occurred_at,
        source=raw.source,
        template_id=template_id,
        dedup_ref=dedup_ref,
        data=data,
    )
    logger.debug("[normalizer] %s %s -> %s", raw.source, raw.event_type, event)
    return event
