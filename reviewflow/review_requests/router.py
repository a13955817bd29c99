# reviewflow/review_requests/router.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from reviewflow.auth import get_current_business, require_cron_secret
from reviewflow.config import settings
from reviewflow.db import get_db, get_session_factory
from reviewflow.models import Business
from reviewflow.telemetry import log_event

from . import repo
from .dispatcher import Dispatcher, default_adapters
from .models import ReviewRequestStatus
from .recovery import RecoverySweep
from .schemas import LifecycleEventIn, LifecycleEventOut, ReviewRequestListOut, StatsOut
from .utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["review-requests"])


def get_adapters():
    return default_adapters(settings)


@router.get("/review-requests", response_model=ReviewRequestListOut)
def list_requests(
    limit: int = Query(200, ge=1, le=500),
    business: Business = Depends(get_current_business),
    db: Session = Depends(get_db),
):
    items = repo.list_review_requests(db, business_id=business.id, limit=limit)
    return {"items": items}


@router.get("/review-requests/stats", response_model=StatsOut)
def stats(
    business: Business = Depends(get_current_business),
    db: Session = Depends(get_db),
):
    return repo.get_stats(db, business_id=business.id)


@router.post("/review-requests/events", response_model=LifecycleEventOut)
def lifecycle_event(
    payload: LifecycleEventIn,
    business: Business = Depends(get_current_business),
    db: Session = Depends(get_db),
):
    rr = repo.get_review_request(db, payload.review_request_id)
    if rr is None or rr.business_id != business.id:
        raise HTTPException(status_code=404, detail="Review request not found")

    to_status = ReviewRequestStatus(payload.event_type)
    changed = repo.transition(db, request_id=rr.id, to_status=to_status, at=utcnow(), commit=False)
    log_event(
        db,
        business_id=business.id,
        event_type=f"review_request_{payload.event_type}",
        data={"review_request_id": rr.id, "changed": changed, "metadata": payload.metadata},
    )
    db.commit()
    db.refresh(rr)

    return {"ok": True, "review_request_id": rr.id, "status": rr.status, "changed": changed}


@router.post("/internal/cron/dispatch", dependencies=[Depends(require_cron_secret)])
def cron_dispatch(
    session_factory=Depends(get_session_factory),
    adapters=Depends(get_adapters),
):
    result = Dispatcher(session_factory, adapters, settings).tick()
    return {"ok": True, **result.as_dict()}


@router.post("/internal/cron/recovery", dependencies=[Depends(require_cron_secret)])
def cron_recovery(
    session_factory=Depends(get_session_factory),
    adapters=Depends(get_adapters),
):
    result = RecoverySweep(session_factory, adapters, settings).run()
    return {"ok": True, "reminders_sent": result.reminded, **result.as_dict()}
