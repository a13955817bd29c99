from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from .models import (
    JobStatus,
    ReviewRequest,
    ReviewRequestStatus,
    ScheduledJob,
)

# estado destino -> estados desde los que se puede llegar
ALLOWED_FROM: dict[ReviewRequestStatus, tuple[ReviewRequestStatus, ...]] = {
    ReviewRequestStatus.sent: (ReviewRequestStatus.scheduled,),
    ReviewRequestStatus.opened: (ReviewRequestStatus.sent,),
    ReviewRequestStatus.clicked: (ReviewRequestStatus.sent, ReviewRequestStatus.opened),
    ReviewRequestStatus.completed: (
        ReviewRequestStatus.sent,
        ReviewRequestStatus.opened,
        ReviewRequestStatus.clicked,
    ),
    ReviewRequestStatus.failed: (ReviewRequestStatus.scheduled, ReviewRequestStatus.sent),
}

TIMESTAMP_FIELD = {
    ReviewRequestStatus.sent: "sent_at",
    ReviewRequestStatus.opened: "opened_at",
    ReviewRequestStatus.clicked: "clicked_at",
    ReviewRequestStatus.completed: "completed_at",
    ReviewRequestStatus.failed: "failed_at",
}


# ---- ReviewRequest ----

def get_review_request(db: Session, request_id: int) -> Optional[ReviewRequest]:
    return db.get(ReviewRequest, request_id)


def get_by_token(db: Session, token: str) -> Optional[ReviewRequest]:
    if not token:
        return None
    stmt = select(ReviewRequest).where(ReviewRequest.tracking_token == token)
    return db.execute(stmt).scalars().first()


def list_review_requests(db: Session, *, business_id: int, limit: int = 200) -> list[ReviewRequest]:
    stmt = (
        select(ReviewRequest)
        .where(ReviewRequest.business_id == business_id)
        .order_by(ReviewRequest.best_send_at.desc(), ReviewRequest.id.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def transition(
    db: Session,
    *,
    request_id: int,
    to_status: ReviewRequestStatus,
    at: datetime,
    error_message: Optional[str] = None,
    extra: Optional[dict] = None,
    commit: bool = True,
) -> bool:
    """
    Update condicional: solo avanza si el estado actual está en ALLOWED_FROM.
    Devuelve False si la transición no aplica (duplicado, retroceso o terminal).
    """
    values = {"status": to_status, TIMESTAMP_FIELD[to_status]: at}
    if error_message is not None:
        values["error_message"] = error_message[:4000]
    if extra:
        values.update(extra)

    stmt = (
        update(ReviewRequest)
        .where(
            ReviewRequest.id == request_id,
            ReviewRequest.status.in_(ALLOWED_FROM[to_status]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = db.execute(stmt).rowcount == 1
    if commit:
        db.commit()
    return changed


def claim_reminder(db: Session, *, request_id: int, at: datetime) -> bool:
    stmt = (
        update(ReviewRequest)
        .where(
            ReviewRequest.id == request_id,
            ReviewRequest.reminder_sent_at.is_(None),
            ReviewRequest.completed_at.is_(None),
        )
        .values(reminder_sent_at=at)
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).rowcount == 1
    db.commit()
    return claimed


def release_reminder(db: Session, *, request_id: int, at: datetime) -> None:
    stmt = (
        update(ReviewRequest)
        .where(ReviewRequest.id == request_id, ReviewRequest.reminder_sent_at == at)
        .values(reminder_sent_at=None)
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()


def get_recovery_candidates(
    db: Session, *, window_start: datetime, window_end: datetime, limit: int = 100
) -> list[ReviewRequest]:
    stmt = (
        select(ReviewRequest)
        .where(
            and_(
                ReviewRequest.clicked_at.is_not(None),
                ReviewRequest.completed_at.is_(None),
                ReviewRequest.reminder_sent_at.is_(None),
                ReviewRequest.clicked_at >= window_start,
                ReviewRequest.clicked_at <= window_end,
            )
        )
        .order_by(ReviewRequest.clicked_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def get_stats(db: Session, *, business_id: int) -> dict:
    rows = db.execute(
        select(ReviewRequest.status, func.count(ReviewRequest.id))
        .where(ReviewRequest.business_id == business_id)
        .group_by(ReviewRequest.status)
    ).all()
    counts = {s.value: 0 for s in ReviewRequestStatus}
    for status, n in rows:
        counts[ReviewRequestStatus(status).value] = int(n)

    # todo lo que llegó a enviarse (sent o más allá)
    delivered = counts["sent"] + counts["opened"] + counts["clicked"] + counts["completed"]
    opened = counts["opened"] + counts["clicked"] + counts["completed"]
    clicked = counts["clicked"] + counts["completed"]

    def rate(n: int) -> float:
        return (n / delivered) if delivered > 0 else 0.0

    return {
        "counts": counts,
        "messages_sent": delivered,
        "open_rate": rate(opened),
        "click_rate": rate(clicked),
        "completion_rate": rate(counts["completed"]),
    }


# ---- ScheduledJob ----

def get_job_by_dedup_key(db: Session, key: str) -> Optional[ScheduledJob]:
    stmt = select(ScheduledJob).where(ScheduledJob.dedup_key == key)
    return db.execute(stmt).scalars().first()


def get_due_job_ids(db: Session, *, now: datetime, limit: int = 25) -> list[int]:
    stmt = (
        select(ScheduledJob.id)
        .where(
            and_(
                ScheduledJob.status == JobStatus.queued,
                ScheduledJob.run_at <= now,
            )
        )
        .order_by(ScheduledJob.run_at.asc(), ScheduledJob.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def claim_job(db: Session, *, job_id: int, now: datetime) -> bool:
    """queued -> running. Solo gana quien encuentra la fila todavía en queued."""
    stmt = (
        update(ScheduledJob)
        .where(ScheduledJob.id == job_id, ScheduledJob.status == JobStatus.queued)
        .values(status=JobStatus.running, claimed_at=now, attempts=ScheduledJob.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).rowcount == 1
    db.commit()
    return claimed


def get_stale_job_ids(db: Session, *, now: datetime, stale_after: timedelta, limit: int = 25) -> list[int]:
    cutoff = now - stale_after
    stmt = (
        select(ScheduledJob.id)
        .where(
            and_(
                ScheduledJob.status == JobStatus.running,
                ScheduledJob.claimed_at < cutoff,
            )
        )
        .order_by(ScheduledJob.claimed_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def reclaim_stale_job(
    db: Session, *, job_id: int, now: datetime, stale_after: timedelta, retry_budget: int
) -> bool:
    """running (caducado) -> running con nuevo claim, mientras quede presupuesto de reintentos."""
    cutoff = now - stale_after
    stmt = (
        update(ScheduledJob)
        .where(
            ScheduledJob.id == job_id,
            ScheduledJob.status == JobStatus.running,
            ScheduledJob.claimed_at < cutoff,
            ScheduledJob.attempts <= retry_budget,
        )
        .values(claimed_at=now, attempts=ScheduledJob.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).rowcount == 1
    db.commit()
    return claimed


def expire_stale_job(
    db: Session, *, job_id: int, now: datetime, stale_after: timedelta, retry_budget: int
) -> bool:
    """running (caducado) sin presupuesto -> failed."""
    cutoff = now - stale_after
    stmt = (
        update(ScheduledJob)
        .where(
            ScheduledJob.id == job_id,
            ScheduledJob.status == JobStatus.running,
            ScheduledJob.claimed_at < cutoff,
            ScheduledJob.attempts > retry_budget,
        )
        .values(status=JobStatus.failed, finished_at=now, error_message="stale claim, retry budget exhausted")
        .execution_options(synchronize_session=False)
    )
    changed = db.execute(stmt).rowcount == 1
    db.commit()
    return changed


def finish_job(
    db: Session,
    *,
    job_id: int,
    status: JobStatus,
    now: datetime,
    error_message: Optional[str] = None,
    commit: bool = True,
) -> bool:
    stmt = (
        update(ScheduledJob)
        .where(ScheduledJob.id == job_id, ScheduledJob.status == JobStatus.running)
        .values(
            status=status,
            finished_at=now,
            error_message=(error_message or None) and error_message[:4000],
        )
        .execution_options(synchronize_session=False)
    )
    changed = db.execute(stmt).rowcount == 1
    if commit:
        db.commit()
    return changed
