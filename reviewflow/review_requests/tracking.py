# reviewflow/review_requests/tracking.py
"""
Pixel de apertura y redirect de click.

Ninguno de los dos falla de cara al cliente: cualquier error interno se loguea,
se hace rollback y se responde igual (pixel o 302).
"""
from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.orm import Session

from reviewflow.config import Settings, settings as default_settings
from reviewflow.db import get_db
from reviewflow.models import Business, business_review_url
from reviewflow.telemetry import log_event

from . import repo
from .models import ReviewRequest, ReviewRequestStatus
from .utils import as_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/email-track", tags=["tracking"])

# PNG transparente 1x1
PIXEL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
}


def get_settings() -> Settings:
    return default_settings


def pixel_response() -> Response:
    return Response(content=PIXEL_PNG, media_type="image/png", headers=PIXEL_HEADERS)


def is_safe_destination(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def is_expired(rr: ReviewRequest, now: datetime, cfg: Settings) -> bool:
    created = rr.created_at or rr.best_send_at
    if created is None:
        return False
    return as_utc(created) < now - timedelta(days=cfg.REVIEW_LINK_TTL_DAYS)


def expire_request(db: Session, rr: ReviewRequest, now: datetime) -> None:
    changed = repo.transition(
        db,
        request_id=rr.id,
        to_status=ReviewRequestStatus.failed,
        at=now,
        error_message="review link expired",
        commit=False,
    )
    log_event(
        db,
        business_id=rr.business_id,
        event_type="review_link_expired",
        data={"review_request_id": rr.id, "status_changed": changed},
    )
    db.commit()


def record_open(
    db: Session, token: str, *, user_agent: Optional[str], ip: Optional[str], now: datetime, cfg: Settings
) -> bool:
    rr = repo.get_by_token(db, token)
    if rr is None:
        logger.warning("[tracking] open with unknown token")
        return False
    if is_expired(rr, now, cfg):
        expire_request(db, rr, now)
        return False

    changed = repo.transition(db, request_id=rr.id, to_status=ReviewRequestStatus.opened, at=now, commit=False)
    # recargas del pixel: sin cambio de estado, pero queda el evento
    log_event(
        db,
        business_id=rr.business_id,
        event_type="email_opened",
        data={"review_request_id": rr.id, "user_agent": user_agent, "ip": ip, "first_open": changed},
    )
    db.commit()
    return changed


def record_click(db: Session, token: str, *, destination: str, now: datetime, cfg: Settings) -> bool:
    rr = repo.get_by_token(db, token)
    if rr is None:
        logger.warning("[tracking] click with unknown token")
        return False
    if is_expired(rr, now, cfg):
        expire_request(db, rr, now)
        return False

    changed = repo.transition(db, request_id=rr.id, to_status=ReviewRequestStatus.clicked, at=now, commit=False)
    log_event(
        db,
        business_id=rr.business_id,
        event_type="review_link_clicked",
        data={"review_request_id": rr.id, "destination": destination, "first_click": changed},
    )
    db.commit()
    return changed


def fallback_destination(db: Session, token: str, cfg: Settings) -> str:
    try:
        rr = repo.get_by_token(db, token)
        if rr is not None:
            business = db.get(Business, rr.business_id)
            url = business_review_url(business) if business else ""
            if url:
                return url
    except Exception:
        db.rollback()
        logger.exception("[tracking] fallback lookup failed")
    return cfg.PUBLIC_BASE_URL


@router.get("/open")
def track_open(
    request: Request,
    t: str = Query(default=""),
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    if t:
        try:
            record_open(
                db,
                t,
                user_agent=request.headers.get("user-agent"),
                ip=client_ip(request),
                now=utcnow(),
                cfg=cfg,
            )
        except Exception:
            db.rollback()
            logger.exception("[tracking] open failed")
    return pixel_response()


@router.get("/click")
def track_click(
    t: str = Query(default=""),
    l: str = Query(default=""),
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    destination = l if is_safe_destination(l) else ""
    if not destination:
        destination = fallback_destination(db, t, cfg) if t else cfg.PUBLIC_BASE_URL

    if t:
        try:
            record_click(db, t, destination=destination, now=utcnow(), cfg=cfg)
        except Exception:
            db.rollback()
            logger.exception("[tracking] click failed")
    return RedirectResponse(url=destination, status_code=302)
