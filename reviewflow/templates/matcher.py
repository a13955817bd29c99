# reviewflow/templates/matcher.py
"""
Elige el template de automatización para un trigger.

Orden total y determinista sobre los candidatos:
1) status elegible (active, y ready si el despliegue lo permite) y trigger_type igual (si está fijado)
2) puntuación: +2 por keyword contenida en free_text, +1 por service_type contenido
3) mayor puntuación; empate -> updated_at más reciente; empate -> id menor
4) nadie puntúa > 0 -> template marcado is_default, o None

Función pura: no lee la hora ni la base de datos.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from reviewflow.config import Settings, settings as default_settings
from reviewflow.models import AutomationTemplate, TemplateStatus
from reviewflow.triggers.normalizer import TriggerEvent

logger = logging.getLogger(__name__)

KEYWORD_POINTS = 2
SERVICE_TYPE_POINTS = 1

# tokens más cortos no cuentan como raíz ("a", "de", "job")
MIN_STEM_LENGTH = 4

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def eligible_statuses(include_ready: bool) -> set[TemplateStatus]:
    if include_ready:
        return {TemplateStatus.active, TemplateStatus.ready}
    return {TemplateStatus.active}


def term_matches(term: str, text: str, tokens: Sequence[str]) -> bool:
    """
    Substring case-insensitive del término en el texto.
    También cuenta cuando una palabra del texto es raíz del término
    ("Roof repair" -> keyword "roofing").
    """
    term = (term or "").strip().lower()
    if not term:
        return False
    if term in text:
        return True
    return any(len(tok) >= MIN_STEM_LENGTH and term.startswith(tok) for tok in tokens)


def score_template(template: AutomationTemplate, free_text: str) -> int:
    text = (free_text or "").lower()
    tokens = _TOKEN_RE.findall(text)

    score = 0
    for kw in template.keywords:
        if term_matches(str(kw), text, tokens):
            score += KEYWORD_POINTS
    for st in template.service_types or []:
        if term_matches(str(st), text, tokens):
            score += SERVICE_TYPE_POINTS
    return score


def _updated(template: AutomationTemplate) -> datetime:
    value = template.updated_at
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _tiebreak(template: AutomationTemplate) -> tuple:
    return (-_updated(template).timestamp(), template.id or 0)


def candidates_for(
    templates: Iterable[AutomationTemplate], event: TriggerEvent, *, include_ready: bool = False
) -> list[AutomationTemplate]:
    allowed = eligible_statuses(include_ready)
    out = []
    for t in templates:
        if t.business_id != event.business_id:
            continue
        if TemplateStatus(t.status) not in allowed:
            continue
        if t.trigger_type and t.trigger_type != event.trigger_type:
            continue
        out.append(t)
    return out


def match(
    templates: Iterable[AutomationTemplate], event: TriggerEvent, *, include_ready: bool = False
) -> Optional[AutomationTemplate]:
    candidates = candidates_for(templates, event, include_ready=include_ready)
    if not candidates:
        return None

    scored = [(score_template(t, event.free_text), t) for t in candidates]
    scored.sort(key=lambda pair: (-pair[0],) + _tiebreak(pair[1]))

    best_score, best = scored[0]
    if best_score > 0:
        return best

    fallbacks = sorted((t for t in candidates if t.is_default), key=_tiebreak)
    return fallbacks[0] if fallbacks else None


def match_for_business(
    db: Session, event: TriggerEvent, *, cfg: Settings | None = None
) -> Optional[AutomationTemplate]:
    cfg = cfg or default_settings
    templates = (
        db.query(AutomationTemplate)
        .filter(AutomationTemplate.business_id == event.business_id)
        .all()
    )
    chosen = match(templates, event, include_ready=cfg.MATCH_READY_TEMPLATES)
    if chosen:
        logger.info(
            "[matcher] business=%s trigger=%s -> template id=%s (%s)",
            event.business_id, event.trigger_type, chosen.id, chosen.name,
        )
    else:
        logger.info("[matcher] business=%s trigger=%s -> no template", event.business_id, event.trigger_type)
    return chosen
