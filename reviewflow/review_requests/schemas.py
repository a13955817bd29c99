# reviewflow/review_requests/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from .models import Channel, ReviewRequestStatus


class ReviewRequestOut(BaseModel):
    id: int
    business_id: int
    customer_id: int
    template_id: Optional[int] = None
    trigger_type: Optional[str] = None
    channel: Channel
    review_link: str

    status: ReviewRequestStatus

    best_send_at: datetime
    sent_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class ReviewRequestListOut(BaseModel):
    items: list[ReviewRequestOut]


class LifecycleEventIn(BaseModel):
    review_request_id: int
    event_type: Literal["opened", "clicked", "completed"]
    metadata: dict[str, Any] = Field(default_factory=dict)


class LifecycleEventOut(BaseModel):
    ok: bool = True
    review_request_id: int
    status: ReviewRequestStatus
    changed: bool


class StatsOut(BaseModel):
    counts: dict[str, int]
    messages_sent: int
    open_rate: float
    click_rate: float
    completion_rate: float
