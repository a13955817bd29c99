# reviewflow/channels/sms_router.py
"""Webhook de SMS entrantes de Twilio: STOP / START / HELP."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Header, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy import or_
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator
from twilio.twiml.messaging_response import MessagingResponse

from reviewflow.config import settings
from reviewflow.db import get_db
from reviewflow.models import Business, Customer
from reviewflow.telemetry import log_event

from .compliance import (
    matches_help_keyword,
    matches_start_keyword,
    matches_stop_keyword,
    normalize_to_e164,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])

STOP_REPLY = "You have been unsubscribed and will not receive further messages. Reply START to resubscribe."
START_REPLY = "You have been resubscribed. Reply STOP to opt out."


def webhook_url(request: Request) -> str:
    # Twilio firma la URL pública; detrás de un proxy request.url no coincide
    url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def verify_twilio_signature(
    request: Request,
    x_twilio_signature: str = Header(default=""),
) -> None:
    token = settings.TWILIO_AUTH_TOKEN
    if not token:
        raise HTTPException(status_code=503, detail="Inbound SMS not configured")

    form = await request.form()
    params = dict(form.multi_items())
    if not x_twilio_signature or not RequestValidator(token).validate(webhook_url(request), params, x_twilio_signature):
        logger.warning("[sms] rejected inbound with bad signature from %s", request.client.host if request.client else "?")
        raise HTTPException(status_code=403, detail="Invalid signature")


def phone_variants(e164: str) -> list[str]:
    """Formas en las que el teléfono puede estar guardado en customers.phone."""
    digits = e164.lstrip("+")
    variants = {e164, digits}
    if len(digits) == 11 and digits.startswith("1"):
        variants.add(digits[1:])
    return sorted(variants)


def find_customers(db: Session, from_number: str, to_number: Optional[str]) -> tuple[Optional[Business], list[Customer]]:
    """
    Clientes afectados por la respuesta, siempre dentro de un tenant:
    - To = número propio de un negocio -> solo sus clientes
    - To = número compartido de la plataforma -> clientes de negocios sin número propio
    - otro To -> nadie
    """
    to_e164 = normalize_to_e164(to_number)
    if not to_e164:
        return None, []

    q = db.query(Customer).filter(Customer.phone.in_(phone_variants(from_number)))

    business = db.query(Business).filter(Business.sms_from_number.in_(phone_variants(to_e164))).first()
    if business is not None:
        return business, q.filter(Customer.business_id == business.id).all()

    if to_e164 == normalize_to_e164(settings.TWILIO_SMS_FROM):
        shared = db.query(Business.id).filter(or_(Business.sms_from_number.is_(None), Business.sms_from_number == ""))
        return None, q.filter(Customer.business_id.in_(shared)).all()

    return None, []


def twiml(message: Optional[str]) -> Response:
    resp = MessagingResponse()
    if message:
        resp.message(message)
    return Response(content=str(resp), media_type="application/xml")


@router.post("/inbound", dependencies=[Depends(verify_twilio_signature)])
def sms_inbound(
    From: str = Form(default=""),
    To: str = Form(default=""),
    Body: str = Form(default=""),
    db: Session = Depends(get_db),
):
    from_e164 = normalize_to_e164(From)
    if not from_e164:
        logger.warning("[sms] inbound with invalid From=%r", From)
        return twiml(None)

    if matches_stop_keyword(Body):
        opted_out, reply, event_type = True, STOP_REPLY, "sms_opt_out"
    elif matches_start_keyword(Body):
        opted_out, reply, event_type = False, START_REPLY, "sms_opt_in"
    elif matches_help_keyword(Body):
        return twiml(settings.SMS_HELP_REPLY)
    else:
        # respuesta libre: no se contesta automáticamente
        return twiml(None)

    business, customers = find_customers(db, from_e164, To)
    for customer in customers:
        customer.sms_opted_out = opted_out
        log_event(
            db,
            business_id=customer.business_id,
            event_type=event_type,
            data={"customer_id": customer.id, "keyword": (Body or "").strip()[:32]},
        )
    db.commit()

    logger.info(
        "[sms] %s from %s**** business=%s customers=%s",
        event_type, from_e164[:6], business.id if business else None, len(customers),
    )
    return twiml(reply)
