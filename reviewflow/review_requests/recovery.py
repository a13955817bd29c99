# reviewflow/review_requests/recovery.py
"""
Barrido de recuperación: clientes que hicieron click pero no completaron la reseña.

Ventana fija (por defecto clicked_at entre hace 36h y hace 24h), un recordatorio
por request como máximo (marcador reminder_sent_at), fallos aislados por item.
No toca ReviewRequest.status.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from reviewflow.channels.base import ChannelAdapter, OutboundMessage
from reviewflow.config import Settings, settings as default_settings
from reviewflow.errors import AdapterFailure
from reviewflow.models import Business, Customer
from reviewflow.telemetry import log_event

from . import repo
from .models import Channel, ReviewRequest
from .utils import utcnow

logger = logging.getLogger(__name__)

REMINDER_SUBJECT = "Quick reminder"


def reminder_message(rr: ReviewRequest, customer: Customer, business: Business) -> OutboundMessage:
    channel = Channel(rr.channel)
    name = (customer.full_name or "").strip() or "there"

    if channel == Channel.email:
        body = (
            f"Hi {name},\n\n"
            f"Just a quick reminder to complete your review for {business.name}.\n\n"
            "Thanks so much!"
        )
        return OutboundMessage(
            to=customer.email or "",
            body=body,
            subject=REMINDER_SUBJECT,
            sender_name=business.name,
            sender_email=business.email,
            review_link=rr.review_link,
        )

    return OutboundMessage(
        to=customer.phone or "",
        body=f"Quick reminder to review {business.name}: {rr.review_link}",
        sender_name=business.name,
        sender_number=business.sms_from_number,
        review_link=rr.review_link,
        opted_out=bool(customer.sms_opted_out),
    )


@dataclass
class RecoveryResult:
    candidates: int = 0
    reminded: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class RecoverySweep:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        adapters: Mapping[Channel, ChannelAdapter],
        cfg: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.adapters = dict(adapters)
        self.cfg = cfg or default_settings

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        start = now - timedelta(hours=self.cfg.RECOVERY_WINDOW_MAX_HOURS)
        end = now - timedelta(hours=self.cfg.RECOVERY_WINDOW_MIN_HOURS)
        return start, end

    def run(self, now: Optional[datetime] = None) -> RecoveryResult:
        now = now or utcnow()
        start, end = self.window(now)
        result = RecoveryResult()

        with self.session_factory() as db:
            ids = [
                rr.id
                for rr in repo.get_recovery_candidates(
                    db, window_start=start, window_end=end, limit=self.cfg.RECOVERY_BATCH_SIZE
                )
            ]
        result.candidates = len(ids)

        for request_id in ids:
            outcome = self.remind(request_id, now)
            if outcome == "reminded":
                result.reminded += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.skipped += 1

        logger.info("[recovery] sweep done window=%s..%s %s", start.isoformat(), end.isoformat(), result.as_dict())
        return result

    def remind(self, request_id: int, now: datetime) -> str:
        with self.session_factory() as db:
            # otra réplica o un barrido anterior ya lo reclamó
            if not repo.claim_reminder(db, request_id=request_id, at=now):
                return "skipped"

            rr = db.get(ReviewRequest, request_id)
            try:
                customer = db.get(Customer, rr.customer_id)
                business = db.get(Business, rr.business_id)
                channel = Channel(rr.channel)
                adapter = self.adapters.get(channel)
                if adapter is None:
                    raise AdapterFailure(channel.value, "no adapter configured")

                result = adapter.send(reminder_message(rr, customer, business))

                log_event(
                    db,
                    business_id=rr.business_id,
                    event_type="reminder_sent",
                    data={"review_request_id": rr.id, "channel": channel.value, "message_id": result.message_id},
                )
                db.commit()
                logger.info("[recovery] reminded review_request=%s via %s", rr.id, channel.value)
                return "reminded"

            except Exception as e:
                db.rollback()
                if isinstance(e, AdapterFailure):
                    logger.warning("[recovery] review_request=%s reminder failed: %s", request_id, e)
                else:
                    logger.exception("[recovery] review_request=%s reminder failed", request_id)

                # se libera el marcador para que otro barrido dentro de la ventana lo reintente
                repo.release_reminder(db, request_id=request_id, at=now)
                log_event(
                    db,
                    business_id=rr.business_id if rr is not None else None,
                    event_type="reminder_failed",
                    data={"review_request_id": request_id, "reason": str(e)[:500]},
                )
                db.commit()
                return "failed"

