# reviewflow/review_requests/scheduler.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reviewflow.config import Settings, settings as default_settings
from reviewflow.errors import InvalidEvent, SchedulingConflict
from reviewflow.models import AutomationTemplate, Business, Customer, business_review_url
from reviewflow.telemetry import log_event
from reviewflow.triggers.normalizer import TriggerEvent

from . import repo
from .models import (
    Channel,
    JobStatus,
    JobType,
    ReviewRequest,
    ReviewRequestStatus,
    ScheduledJob,
    SendReviewRequestPayload,
)
from .utils import as_utc, compute_send_at, dedup_key, new_tracking_token, tracked_click_url, utcnow

logger = logging.getLogger(__name__)

CHANNEL_ORDER = (Channel.email, Channel.sms)


def choose_channel(template: AutomationTemplate, customer: Customer) -> Channel:
    """Primer canal del template para el que el cliente tiene destino."""
    wanted = [Channel(c) for c in (template.channels or []) if c in Channel._value2member_map_]
    if not wanted:
        wanted = [Channel.email]

    for ch in CHANNEL_ORDER:
        if ch not in wanted:
            continue
        if ch == Channel.email and (customer.email or "").strip():
            return ch
        if ch == Channel.sms and (customer.phone or "").strip():
            return ch

    # sin destino: fallará en el envío como destino inválido
    return wanted[0]


def review_destination(business: Business, token: str, cfg: Settings) -> str:
    url = business_review_url(business)
    if url:
        return url
    # página del frontend, esta API no la sirve
    return f"{cfg.FEEDBACK_PAGE_URL.rstrip('/')}/{token}"


def _check_duplicate(db: Session, key: str, *, now: datetime, window: timedelta) -> None:
    existing = repo.get_job_by_dedup_key(db, key)
    if existing is None:
        return
    if existing.created_at >= now - window:
        raise SchedulingConflict(existing.id, existing.review_request_id)
    # fuera de la ventana: se libera la clave para el nuevo job
    existing.dedup_key = None
    db.flush()


def schedule(
    db: Session,
    *,
    business: Business,
    customer: Customer,
    template: AutomationTemplate,
    event: TriggerEvent,
    cfg: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> ScheduledJob:
    """
    Crea ReviewRequest(scheduled) + ScheduledJob(queued) en un único commit.
    Lanza SchedulingConflict si el mismo trigger ya se programó dentro de la ventana
    e InvalidEvent si el delay del template no es válido.
    """
    cfg = cfg or default_settings
    now = now or utcnow()
    window = timedelta(seconds=cfg.DEDUP_WINDOW_SECONDS)
    ref = event.dedup_ref or as_utc(event.occurred_at).isoformat()
    key = dedup_key(business.id, customer.id, template.id, ref)

    try:
        send_at = compute_send_at(event.occurred_at, template.config)
    except ValueError as e:
        raise InvalidEvent(f"template {template.id} misconfigured: {e}")

    try:
        _check_duplicate(db, key, now=now, window=window)

        token = new_tracking_token()
        channel = choose_channel(template, customer)

        rr = ReviewRequest(
            business_id=business.id,
            customer_id=customer.id,
            template_id=template.id,
            trigger_type=event.trigger_type,
            channel=channel,
            message=template.message_body,
            subject=(template.config or {}).get("subject"),
            tracking_token=token,
            review_link=tracked_click_url(cfg.PUBLIC_BASE_URL, token, review_destination(business, token, cfg)),
            status=ReviewRequestStatus.scheduled,
            best_send_at=send_at,
        )
        db.add(rr)
        db.flush()

        payload = SendReviewRequestPayload(
            review_request_id=rr.id,
            template_id=template.id,
            trigger_type=event.trigger_type,
        )
        job = ScheduledJob(
            business_id=business.id,
            job_type=JobType.send_review_request_now,
            payload=payload.model_dump(),
            review_request_id=rr.id,
            run_at=send_at,
            status=JobStatus.queued,
            dedup_key=key,
            created_at=now,
        )
        db.add(job)

        log_event(
            db,
            business_id=business.id,
            event_type="automation_scheduled",
            data={
                "review_request_id": rr.id,
                "template_id": template.id,
                "trigger_type": event.trigger_type,
                "channel": channel.value,
                "run_at": send_at.isoformat(),
            },
        )
        db.commit()
    except SchedulingConflict:
        db.rollback()
        raise
    except IntegrityError:
        # carrera con otro request idéntico: el otro insertó primero la dedup_key
        db.rollback()
        existing = repo.get_job_by_dedup_key(db, key)
        if existing is None:
            raise
        raise SchedulingConflict(existing.id, existing.review_request_id)
    except Exception:
        db.rollback()
        raise

    db.refresh(job)
    logger.info(
        "[scheduler] job=%s review_request=%s channel=%s run_at=%s",
        job.id, job.review_request_id, channel.value, job.run_at.isoformat(),
    )
    return job
