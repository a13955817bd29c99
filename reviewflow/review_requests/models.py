# reviewflow/review_requests/models.py
import enum
from typing import Literal

from pydantic import BaseModel
from sqlalchemy import (
    Column, Integer, String, Text, Enum, Index, ForeignKey, JSON
)
from sqlalchemy.sql import func

from reviewflow.db import Base, UTCDateTime


class Channel(str, enum.Enum):
    email = "email"
    sms = "sms"


class ReviewRequestStatus(str, enum.Enum):
    scheduled = "scheduled"
    sent = "sent"
    opened = "opened"
    clicked = "clicked"
    completed = "completed"
    failed = "failed"


class ReviewRequest(Base):
    __tablename__ = "review_requests"

    id = Column(Integer, primary_key=True, index=True)

    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("automation_templates.id"), nullable=True)

    trigger_type = Column(String(50), nullable=True)
    channel = Column(Enum(Channel), nullable=False)

    # snapshot del cuerpo del template en el momento del match
    message = Column(Text, nullable=False, default="")
    subject = Column(String(200), nullable=True)

    tracking_token = Column(String(64), nullable=False, unique=True, index=True)
    review_link = Column(Text, nullable=False)

    status = Column(Enum(ReviewRequestStatus), nullable=False, default=ReviewRequestStatus.scheduled)

    best_send_at = Column(UTCDateTime, nullable=False, index=True)
    sent_at = Column(UTCDateTime, nullable=True)
    opened_at = Column(UTCDateTime, nullable=True)
    clicked_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)
    reminder_sent_at = Column(UTCDateTime, nullable=True)

    provider_message_id = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


Index("ix_review_requests_clicked_completed", ReviewRequest.clicked_at, ReviewRequest.completed_at)


class JobType(str, enum.Enum):
    send_review_request_now = "send_review_request_now"


class JobStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)

    job_type = Column(Enum(JobType), nullable=False)
    payload = Column(JSON, nullable=False)

    # FK real: un job sin ReviewRequest no puede existir
    review_request_id = Column(Integer, ForeignKey("review_requests.id"), nullable=False, index=True)

    run_at = Column(UTCDateTime, nullable=False, index=True)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.queued)

    attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(UTCDateTime, nullable=True)
    finished_at = Column(UTCDateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # sha256(business, customer, template, id externo u occurred_at); se libera (NULL) fuera de la ventana
    dedup_key = Column(String(64), nullable=True, unique=True)

    created_at = Column(UTCDateTime, nullable=False)


Index("ix_scheduled_jobs_status_run_at", ScheduledJob.status, ScheduledJob.run_at)


# ---- payloads tipados por job_type ----

class SendReviewRequestPayload(BaseModel):
    job_type: Literal["send_review_request_now"] = "send_review_request_now"
    review_request_id: int
    template_id: int | None = None
    trigger_type: str | None = None


# job_type -> forma del payload
PAYLOAD_TYPES: dict[JobType, type[BaseModel]] = {
    JobType.send_review_request_now: SendReviewRequestPayload,
}


def parse_payload(job_type: JobType, raw: dict) -> BaseModel:
    model = PAYLOAD_TYPES.get(JobType(job_type))
    if model is None:
        raise ValueError(f"unsupported job_type {job_type}")
    return model.model_validate(raw or {})
