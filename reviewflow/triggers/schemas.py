# reviewflow/triggers/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class TriggerIn(BaseModel):
    customer_id: Optional[int] = None
    customer_email: Optional[str] = Field(default=None, max_length=320)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    trigger_type: str = Field(min_length=1, max_length=100)
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    @field_validator("customer_email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else v


class WebhookIn(BaseModel):
    """Forma común de Jobber / QuickBooks / Zapier una vez aplanado el payload."""

    event_type: str = Field(min_length=1, max_length=100)
    customer_id: Optional[int] = None
    customer_email: Optional[str] = Field(default=None, max_length=320)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    business_id: Optional[int] = None
    occurred_at: Optional[datetime] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer_email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else v


class TriggerOut(BaseModel):
    success: bool = True
    status: str
    execution_id: Optional[int] = None
    review_request_id: Optional[int] = None
    template_id: Optional[int] = None
    scheduled_for: Optional[datetime] = None
    duplicate: bool = False
    message: Optional[str] = None
