# reviewflow/templates/router.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from reviewflow.auth import get_current_business
from reviewflow.db import get_db
from reviewflow.models import Business

from .defaults import provision_default_templates

router = APIRouter(prefix="/templates", tags=["templates"])


@router.post("/provision-defaults")
def provision_defaults(
    business: Business = Depends(get_current_business),
    db: Session = Depends(get_db),
):
    templates = provision_default_templates(db, business)
    return {
        "success": True,
        "templates": [
            {
                "id": t.id,
                "key": t.key,
                "name": t.name,
                "status": t.status.value if hasattr(t.status, "value") else t.status,
                "trigger_type": t.trigger_type,
                "is_default": t.is_default,
            }
            for t in templates
        ],
    }
