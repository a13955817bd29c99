# reviewflow/triggers/router.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from reviewflow.auth import get_current_business
from reviewflow.db import get_db
from reviewflow.errors import InvalidEvent, TenantMismatch
from reviewflow.models import Business

from .normalizer import RawEvent
from .schemas import TriggerIn, TriggerOut, WebhookIn
from .service import TriggerResult, process_trigger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["triggers"])

WEBHOOK_SOURCES = {"jobber", "quickbooks", "zapier"}


def _run(db: Session, business: Business, raw: RawEvent) -> TriggerOut:
    try:
        result = process_trigger(db, business=business, raw=raw)
    except TenantMismatch as e:
        db.rollback()
        # 404: no se revela si el id existe en otro negocio
        raise HTTPException(status_code=404, detail=str(e) or "Not found")
    except InvalidEvent as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return _to_out(result)


def _to_out(result: TriggerResult) -> TriggerOut:
    messages = {
        "scheduled": "Automation scheduled",
        "duplicate": "Duplicate trigger ignored",
        "no_match": "No active automation matches this trigger",
    }
    return TriggerOut(
        status=result.status,
        execution_id=result.execution_id,
        review_request_id=result.review_request_id,
        template_id=result.template_id,
        scheduled_for=result.scheduled_for,
        duplicate=result.status == "duplicate",
        message=messages.get(result.status),
    )


@router.post("/trigger", response_model=TriggerOut)
def trigger(
    payload: TriggerIn,
    business: Business = Depends(get_current_business),
    db: Session = Depends(get_db),
):
    raw = RawEvent(
        source="manual",
        event_type=payload.trigger_type,
        customer_id=payload.customer_id,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        occurred_at=payload.occurred_at,
        data=payload.trigger_data,
    )
    return _run(db, business, raw)


@router.post("/webhooks/{source}", response_model=TriggerOut)
def webhook(
    source: str,
    payload: WebhookIn,
    business: Business = Depends(get_current_business),
    db: Session = Depends(get_db),
):
    source = source.strip().lower()
    if source not in WEBHOOK_SOURCES:
        raise HTTPException(status_code=404, detail=f"Unknown webhook source {source!r}")

    logger.info("[webhook] %s %s business=%s", source, payload.event_type, business.id)
    raw = RawEvent(
        source=source,
        event_type=payload.event_type,
        customer_id=payload.customer_id,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        business_id=payload.business_id,
        occurred_at=payload.occurred_at,
        data=payload.data,
    )
    return _run(db, business, raw)
