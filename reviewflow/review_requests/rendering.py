# reviewflow/review_requests/rendering.py
from __future__ import annotations

import logging
import re
from typing import Any

from reviewflow.channels.base import OutboundMessage
from reviewflow.config import Settings
from reviewflow.models import Business, Customer

from .models import Channel, ReviewRequest
from .utils import tracking_pixel_url

logger = logging.getLogger(__name__)

VARIABLE_RE = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")

DEFAULT_MESSAGE = "Thank you for your business! Please consider leaving us a review."


def build_context(rr: ReviewRequest, customer: Customer, business: Business) -> dict[str, Any]:
    full_name = (customer.full_name or "").strip()
    first_name = full_name.split()[0] if full_name else ""
    ctx = {
        "customer.name": full_name or "Customer",
        "customer.first_name": first_name or "there",
        "customer.email": customer.email or "",
        "customer.phone": customer.phone or "",
        "business.name": business.name or "",
        "review_link": rr.review_link,
    }
    # alias planos que usan las plantillas antiguas
    ctx["customer_name"] = ctx["customer.name"]
    ctx["first_name"] = ctx["customer.first_name"]
    ctx["business_name"] = ctx["business.name"]
    return ctx


def render(text: str, context: dict[str, Any]) -> str:
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key in context:
            return str(context[key])
        logger.debug("[render] unknown variable {{%s}}", key)
        return ""

    return VARIABLE_RE.sub(_sub, text or "")


def build_message(
    rr: ReviewRequest, customer: Customer, business: Business, cfg: Settings
) -> OutboundMessage:
    context = build_context(rr, customer, business)
    body = render(rr.message or DEFAULT_MESSAGE, context)
    subject = render(rr.subject, context) if rr.subject else None

    channel = Channel(rr.channel)
    if channel == Channel.email:
        return OutboundMessage(
            to=customer.email or "",
            body=body,
            subject=subject,
            sender_name=business.name,
            sender_email=business.email,
            review_link=rr.review_link,
            pixel_url=tracking_pixel_url(cfg.PUBLIC_BASE_URL, rr.tracking_token),
        )

    return OutboundMessage(
        to=customer.phone or "",
        body=body,
        sender_name=business.name,
        sender_number=business.sms_from_number,
        review_link=rr.review_link,
        opted_out=bool(customer.sms_opted_out),
    )
