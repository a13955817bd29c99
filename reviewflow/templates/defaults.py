# reviewflow/templates/defaults.py
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from reviewflow.models import AutomationTemplate, Business, TemplateStatus

logger = logging.getLogger(__name__)

# plantillas de onboarding; quedan en "ready" hasta que el negocio las active
DEFAULT_TEMPLATES = [
    {
        "key": "job_completed",
        "name": "Job Completed",
        "channels": ["sms", "email"],
        "trigger_type": "job_completed",
        "config": {
            "message_body": (
                "Hi {{customer.first_name}}, thank you for choosing {{business.name}}! "
                "We hope you were satisfied with our service. Please take a moment to leave us a review: {{review_link}}"
            ),
            "delay_hours": 24,
        },
    },
    {
        "key": "invoice_paid",
        "name": "Invoice Paid",
        "channels": ["email", "sms"],
        "trigger_type": "invoice_paid",
        "config": {
            "message_body": (
                "Hi {{customer.first_name}}, thank you for your payment! We appreciate your business. "
                "Please consider leaving {{business.name}} a review: {{review_link}}"
            ),
            "delay_hours": 48,
            "subject": "Thank you for your payment!",
        },
    },
    {
        "key": "thank_you",
        "name": "Thank You",
        "channels": ["email", "sms"],
        "trigger_type": None,
        "is_default": True,
        "config": {
            "message_body": (
                "Hi {{customer.first_name}}, thanks for your business! "
                "We'd love your feedback: {{review_link}}"
            ),
            "delay_hours": 24,
        },
    },
]


def provision_default_templates(db: Session, business: Business) -> list[AutomationTemplate]:
    """Crea los templates por defecto si el negocio todavía no tiene ninguno."""
    existing = (
        db.query(AutomationTemplate)
        .filter(AutomationTemplate.business_id == business.id)
        .order_by(AutomationTemplate.id.asc())
        .all()
    )
    if existing:
        return existing

    created = []
    for item in DEFAULT_TEMPLATES:
        t = AutomationTemplate(
            business_id=business.id,
            key=item["key"],
            name=item["name"],
            status=TemplateStatus.ready,
            channels=list(item["channels"]),
            trigger_type=item["trigger_type"],
            config=dict(item["config"]),
            service_types=[],
            is_default=item.get("is_default", False),
        )
        db.add(t)
        created.append(t)

    db.commit()
    for t in created:
        db.refresh(t)

    logger.info("[templates] provisioned %s default templates for business=%s", len(created), business.id)
    return created
