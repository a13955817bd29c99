# reviewflow/review_requests/utils.py
from __future__ import annotations

import hashlib
import math
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # asumimos UTC si viene naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _number(value) -> float:
    if value is None or value == "":
        return 0.0
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid delay value: {value!r}")
    if not math.isfinite(n):
        raise ValueError(f"invalid delay value: {value!r}")
    if n < 0:
        raise ValueError(f"negative delay: {value!r}")
    return n


def compute_delay(config: dict | None) -> timedelta:
    """
    Retraso configurado en el template.
    - delay_days presente: días + delay_hours (opcional)
    - si no: solo delay_hours
    """
    config = config or {}
    hours = _number(config.get("delay_hours"))
    if config.get("delay_days") not in (None, ""):
        return timedelta(days=_number(config.get("delay_days")), hours=hours)
    return timedelta(hours=hours)


def compute_send_at(occurred_at: datetime, config: dict | None) -> datetime:
    try:
        return as_utc(occurred_at) + compute_delay(config)
    except OverflowError:
        # delay_hours=1e12, "inf"...
        raise ValueError(f"delay out of range: {config!r}")


def new_tracking_token() -> str:
    # 32 bytes aleatorios -> no enumerable
    return secrets.token_urlsafe(32)


def dedup_key(business_id: int, customer_id: int, template_id: int | None, ref: str) -> str:
    # ref: id del evento externo, su timestamp, o "untimed"
    raw = f"{business_id}|{customer_id}|{template_id}|{ref}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def tracked_click_url(base_url: str, token: str, destination: str) -> str:
    query = urlencode({"t": token, "l": destination})
    return f"{base_url.rstrip('/')}/email-track/click?{query}"


def tracking_pixel_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/email-track/open?{urlencode({'t': token})}"
