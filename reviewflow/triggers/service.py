# reviewflow/triggers/service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from reviewflow.config import Settings, settings as default_settings
from reviewflow.errors import InvalidEvent, NoMatchingTemplate, SchedulingConflict, TenantMismatch
from reviewflow.models import AutomationTemplate, Business, Customer, TemplateStatus
from reviewflow.review_requests.scheduler import schedule
from reviewflow.review_requests.utils import utcnow
from reviewflow.telemetry import log_event
from reviewflow.templates.matcher import match_for_business

from .normalizer import RawEvent, TriggerEvent, normalize

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    status: str  # scheduled | duplicate | no_match
    execution_id: Optional[int] = None
    review_request_id: Optional[int] = None
    template_id: Optional[int] = None
    scheduled_for: Optional[datetime] = None


def resolve_explicit_template(db: Session, event: TriggerEvent) -> AutomationTemplate:
    template = (
        db.query(AutomationTemplate)
        .filter(
            AutomationTemplate.id == event.template_id,
            AutomationTemplate.business_id == event.business_id,
        )
        .first()
    )
    if template is None:
        raise TenantMismatch("template not found")
    if TemplateStatus(template.status) == TemplateStatus.paused:
        raise InvalidEvent(f"template {template.id} is paused")
    return template


def select_template(db: Session, event: TriggerEvent, cfg: Settings) -> AutomationTemplate:
    """Template explícito (manual_trigger) o el mejor del matcher. NoMatchingTemplate si no hay."""
    if event.template_id is not None:
        return resolve_explicit_template(db, event)
    template = match_for_business(db, event, cfg=cfg)
    if template is None:
        raise NoMatchingTemplate(f"no template for {event.trigger_type}")
    return template


def process_trigger(
    db: Session,
    *,
    business: Business,
    raw: RawEvent,
    cfg: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> TriggerResult:
    """
    normalize -> match -> schedule.
    InvalidEvent sube al llamador; sin template o duplicado no son errores.
    """
    cfg = cfg or default_settings
    now = now or utcnow()

    event = normalize(db, raw, business_id=business.id, now=now)

    try:
        template = select_template(db, event, cfg)
    except NoMatchingTemplate:
        log_event(
            db,
            business_id=business.id,
            event_type="automation_no_match",
            data={"trigger_type": event.trigger_type, "customer_id": event.customer_id, "source": event.source},
        )
        db.commit()
        return TriggerResult(status="no_match")

    customer = db.get(Customer, event.customer_id)

    try:
        job = schedule(db, business=business, customer=customer, template=template, event=event, cfg=cfg, now=now)
    except SchedulingConflict as exc:
        logger.info("[trigger] duplicate trigger absorbed, existing job=%s", exc.existing_job_id)
        log_event(
            db,
            business_id=business.id,
            event_type="automation_duplicate",
            data={"job_id": exc.existing_job_id, "trigger_type": event.trigger_type, "customer_id": event.customer_id},
        )
        db.commit()
        return TriggerResult(
            status="duplicate",
            execution_id=exc.existing_job_id,
            review_request_id=exc.review_request_id,
            template_id=template.id,
        )
    except InvalidEvent as exc:
        # template mal configurado: queda registrado y sube como 400
        logger.warning("[trigger] template=%s rejected: %s", template.id, exc)
        log_event(
            db,
            business_id=business.id,
            event_type="automation_failed",
            data={"template_id": template.id, "trigger_type": event.trigger_type, "reason": str(exc)[:500]},
        )
        db.commit()
        raise

    log_event(
        db,
        business_id=business.id,
        event_type="automation_triggered",
        data={
            "trigger_type": event.trigger_type,
            "customer_id": event.customer_id,
            "execution_id": job.id,
            "source": event.source,
        },
    )
    db.commit()

    return TriggerResult(
        status="scheduled",
        execution_id=job.id,
        review_request_id=job.review_request_id,
        template_id=template.id,
        scheduled_for=job.run_at,
    )
