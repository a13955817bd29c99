# reviewflow/review_requests/dispatcher.py
"""
Ejecutor por polling de los ScheduledJob vencidos.

Cada tick:
1) recupera claims caducados (crash a mitad de envío): un reintento, luego failed
2) reclama hasta N jobs queued con run_at <= now (update condicional, exclusivo entre réplicas)
3) procesa cada job con su propia sesión; el fallo de uno no corta el lote

Toda la coordinación va por updates condicionales en la base de datos; nada de locks en proceso.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from reviewflow.channels.base import ChannelAdapter
from reviewflow.channels.email import EmailAdapter
from reviewflow.channels.sms import SMSAdapter
from reviewflow.config import Settings, settings as default_settings
from reviewflow.errors import AdapterFailure, ClaimConflict, DanglingReferenceError
from reviewflow.models import Business, Customer
from reviewflow.telemetry import log_event

from . import repo
from .models import (
    Channel,
    JobStatus,
    JobType,
    ReviewRequest,
    ReviewRequestStatus,
    ScheduledJob,
    SendReviewRequestPayload,
    parse_payload,
)
from .rendering import build_message
from .utils import utcnow

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class TickResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0
    reclaimed: int = 0
    expired: int = 0

    def as_dict(self) -> dict:
        return dict(self.__dict__)


def default_adapters(cfg: Optional[Settings] = None) -> dict[Channel, ChannelAdapter]:
    cfg = cfg or default_settings
    return {Channel.email: EmailAdapter(cfg), Channel.sms: SMSAdapter(cfg)}


class Dispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        adapters: Mapping[Channel, ChannelAdapter],
        cfg: Optional[Settings] = None,
        *,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.adapters = dict(adapters)
        self.cfg = cfg or default_settings
        self.max_workers = max_workers if max_workers is not None else self.cfg.DISPATCH_WORKERS
        self._handlers = {
            JobType.send_review_request_now: self._send_review_request,
        }

    # ---- tick ----

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or utcnow()
        result = TickResult()

        with self.session_factory() as db:
            owned = self._recover_stale(db, now, result)

            due = repo.get_due_job_ids(db, now=now, limit=self.cfg.DISPATCH_BATCH_SIZE)
            for job_id in due:
                try:
                    owned.append(self._claim(db, job_id, now))
                except ClaimConflict:
                    # otra réplica lo tiene, se salta
                    result.conflicts += 1

        if not owned:
            return result

        if self.max_workers > 1 and len(owned) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(owned))) as pool:
                outcomes = list(pool.map(lambda jid: self.process_job(jid, now), owned))
        else:
            outcomes = [self.process_job(jid, now) for jid in owned]

        result.processed = len(outcomes)
        result.sent = outcomes.count(SENT)
        result.failed = outcomes.count(FAILED)
        result.skipped = outcomes.count(SKIPPED)

        logger.info("[dispatcher] tick done %s", result.as_dict())
        return result

    def _claim(self, db: Session, job_id: int, now: datetime) -> int:
        if not repo.claim_job(db, job_id=job_id, now=now):
            raise ClaimConflict(job_id)
        return job_id

    def _recover_stale(self, db: Session, now: datetime, result: TickResult) -> list[int]:
        stale_after = timedelta(seconds=self.cfg.STALE_CLAIM_SECONDS)
        budget = self.cfg.CLAIM_RETRY_BUDGET
        owned: list[int] = []

        for job_id in repo.get_stale_job_ids(db, now=now, stale_after=stale_after, limit=self.cfg.DISPATCH_BATCH_SIZE):
            if repo.reclaim_stale_job(db, job_id=job_id, now=now, stale_after=stale_after, retry_budget=budget):
                logger.warning("[dispatcher] re-claimed stale job=%s", job_id)
                result.reclaimed += 1
                owned.append(job_id)
                continue

            if repo.expire_stale_job(db, job_id=job_id, now=now, stale_after=stale_after, retry_budget=budget):
                job = db.get(ScheduledJob, job_id)
                repo.transition(
                    db,
                    request_id=job.review_request_id,
                    to_status=ReviewRequestStatus.failed,
                    at=now,
                    error_message="stale claim, retry budget exhausted",
                    commit=False,
                )
                log_event(
                    db,
                    business_id=job.business_id,
                    event_type="scheduled_job_failed",
                    data={"job_id": job.id, "review_request_id": job.review_request_id, "reason": "stale_claim"},
                )
                db.commit()
                logger.warning("[dispatcher] stale job=%s failed permanently (attempts=%s)", job_id, job.attempts)
                result.expired += 1
            else:
                result.conflicts += 1

        return owned

    # ---- por job ----

    def process_job(self, job_id: int, now: datetime) -> str:
        with self.session_factory() as db:
            review_request_id = None
            try:
                job = db.get(ScheduledJob, job_id)
                if job is None:
                    raise DanglingReferenceError(f"job {job_id} vanished")
                review_request_id = job.review_request_id

                handler = self._handlers.get(JobType(job.job_type))
                if handler is None:
                    raise ValueError(f"no handler for job_type {job.job_type}")
                payload = parse_payload(job.job_type, job.payload)
                return handler(db, job, payload, now)

            except AdapterFailure as f:
                db.rollback()
                logger.warning("[dispatcher] job=%s adapter failure: %s", job_id, f)
                self._record_failure(db, job_id, review_request_id, f"{f.channel}: {f.reason}", now)
                return FAILED

            except DanglingReferenceError as e:
                db.rollback()
                logger.critical("[dispatcher] job=%s dangling reference: %s", job_id, e)
                self._record_failure(db, job_id, None, f"dangling reference: {e}", now)
                return FAILED

            except Exception as e:
                db.rollback()
                logger.exception("[dispatcher] job=%s failed", job_id)
                self._record_failure(db, job_id, review_request_id, str(e) or e.__class__.__name__, now)
                return FAILED

    def _send_review_request(
        self, db: Session, job: ScheduledJob, payload: SendReviewRequestPayload, now: datetime
    ) -> str:
        rr = db.get(ReviewRequest, payload.review_request_id)
        if rr is None:
            raise DanglingReferenceError(f"review_request {payload.review_request_id} missing for job {job.id}")

        status = ReviewRequestStatus(rr.status)
        if status != ReviewRequestStatus.scheduled:
            # ya enviado (p.ej. re-claim tras crash después del commit) -> no reenviar
            final = JobStatus.failed if status == ReviewRequestStatus.failed else JobStatus.done
            repo.finish_job(db, job_id=job.id, status=final, now=now, error_message=f"request already {status.value}")
            logger.info("[dispatcher] job=%s skipped, review_request=%s already %s", job.id, rr.id, status.value)
            return SKIPPED

        customer = db.get(Customer, rr.customer_id)
        business = db.get(Business, rr.business_id)
        if customer is None or business is None:
            raise DanglingReferenceError(f"review_request {rr.id} without customer/business")

        channel = Channel(rr.channel)
        adapter = self.adapters.get(channel)
        if adapter is None:
            raise AdapterFailure(channel.value, "no adapter configured")

        message = build_message(rr, customer, business, self.cfg)
        result = adapter.send(message)

        repo.transition(
            db,
            request_id=rr.id,
            to_status=ReviewRequestStatus.sent,
            at=now,
            extra={"provider_message_id": result.message_id or None, "error_message": None},
            commit=False,
        )
        repo.finish_job(db, job_id=job.id, status=JobStatus.done, now=now, commit=False)
        log_event(
            db,
            business_id=rr.business_id,
            event_type="review_request_sent",
            data={"review_request_id": rr.id, "job_id": job.id, "channel": channel.value, "message_id": result.message_id},
        )
        db.commit()
        logger.info("[dispatcher] sent job=%s review_request=%s via %s", job.id, rr.id, channel.value)
        return SENT

    def _record_failure(
        self, db: Session, job_id: int, review_request_id: Optional[int], reason: str, now: datetime
    ) -> None:
        business_id = None
        job = db.get(ScheduledJob, job_id)
        if job is not None:
            business_id = job.business_id
        repo.finish_job(db, job_id=job_id, status=JobStatus.failed, now=now, error_message=reason, commit=False)
        if review_request_id is not None:
            repo.transition(
                db,
                request_id=review_request_id,
                to_status=ReviewRequestStatus.failed,
                at=now,
                error_message=reason,
                commit=False,
            )
        log_event(
            db,
            business_id=business_id,
            event_type="review_request_failed",
            data={"job_id": job_id, "review_request_id": review_request_id, "reason": reason[:500]},
        )
        db.commit()

