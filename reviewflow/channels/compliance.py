# reviewflow/channels/compliance.py
from __future__ import annotations

import re
from typing import Optional

STOP_KEYWORDS = {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "OPTOUT"}
START_KEYWORDS = {"START", "UNSTOP", "YES"}
HELP_KEYWORDS = {"HELP", "INFO"}

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_to_e164(raw: Optional[str], default_country_code: str = "1") -> Optional[str]:
    """
    "+34 699 111 222" -> "+34699111222"
    "(415) 555-1234"  -> "+14155551234"  (10 dígitos: prefijo por defecto)
    Devuelve None si no parece un número válido.
    """
    raw = (raw or "").strip()
    if not raw:
        return None
    if raw.startswith("whatsapp:"):
        raw = raw[len("whatsapp:"):]

    has_plus = raw.startswith("+")
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return None

    if has_plus:
        candidate = f"+{digits}"
    elif raw.startswith("00"):
        candidate = f"+{digits[2:]}"
    elif len(digits) == 10:
        candidate = f"+{default_country_code}{digits}"
    elif len(digits) == 11 and digits.startswith(default_country_code):
        candidate = f"+{digits}"
    else:
        candidate = f"+{digits}"

    return candidate if E164_RE.match(candidate) else None


def ensure_footer(body: str, footer: str) -> str:
    body = (body or "").rstrip()
    if not footer or footer.lower() in body.lower():
        return body
    return f"{body}\n\n{footer}"


def _first_word(body: str) -> str:
    words = (body or "").strip().split()
    return words[0].upper().strip(".!") if words else ""


def matches_stop_keyword(body: str) -> bool:
    return _first_word(body) in STOP_KEYWORDS


def matches_start_keyword(body: str) -> bool:
    return _first_word(body) in START_KEYWORDS


def matches_help_keyword(body: str) -> bool:
    return _first_word(body) in HELP_KEYWORDS
