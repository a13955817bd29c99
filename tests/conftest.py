"""Shared test fixtures."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reviewflow.auth import hash_token
from reviewflow.channels.base import ChannelAdapter, SendResult
from reviewflow.config import Settings
from reviewflow.db import Base
from reviewflow.errors import AdapterFailure
from reviewflow.models import AutomationTemplate, Business, Customer, TemplateStatus
from reviewflow.review_requests.models import Channel, ReviewRequest, ScheduledJob
from reviewflow.telemetry import TelemetryEvent

# Models must be imported so Base.metadata.create_all() sees all tables.
_ALL_MODELS = [Business, Customer, AutomationTemplate, ReviewRequest, ScheduledJob, TelemetryEvent]

API_TOKEN = "test-api-token"
TWILIO_TOKEN = "twilio-test-token"
T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class RecordingAdapter(ChannelAdapter):
    """Adapter falso: guarda cada mensaje y puede fallar a demanda."""

    def __init__(self, channel: str, fail_with: str | None = None):
        self.channel = channel
        self.fail_with = fail_with
        self.sent = []

    def send(self, message):
        if self.fail_with:
            raise AdapterFailure(self.channel, self.fail_with)
        self.sent.append(message)
        return SendResult(message_id=f"{self.channel}-{len(self.sent)}")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cfg():
    return Settings(
        _env_file=None,
        PUBLIC_BASE_URL="https://app.example.com",
        CRON_SECRET="cron-secret",
        DEDUP_WINDOW_SECONDS=300,
        STALE_CLAIM_SECONDS=600,
        CLAIM_RETRY_BUDGET=1,
        DISPATCH_WORKERS=1,
        RESEND_API_KEY="re_test",
        TWILIO_SMS_FROM="+15550000000",
    )


@pytest.fixture
def business(db_session):
    b = Business(
        name="Acme Roofing",
        email="hello@acmeroofing.com",
        api_token_hash=hash_token(API_TOKEN),
        google_place_id="ChIJtestplace",
    )
    db_session.add(b)
    db_session.commit()
    return b


@pytest.fixture
def other_business(db_session):
    b = Business(name="Other Co", email="other@example.com", api_token_hash=hash_token("other-token"))
    db_session.add(b)
    db_session.commit()
    return b


@pytest.fixture
def customer(db_session, business):
    c = Customer(
        business_id=business.id,
        full_name="Jane Doe",
        email="jane@example.com",
        phone="+14155551234",
    )
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture
def template(db_session, business):
    t = AutomationTemplate(
        business_id=business.id,
        key="job_completed",
        name="Roofing follow-up",
        status=TemplateStatus.active,
        channels=["email", "sms"],
        trigger_type="job_completed",
        config={
            "message_body": "Hi {{customer.first_name}}, thanks for choosing {{business.name}}!",
            "delay_hours": 24,
            "keywords": ["roofing"],
        },
        service_types=[],
    )
    db_session.add(t)
    db_session.commit()
    return t


@pytest.fixture
def email_adapter():
    return RecordingAdapter("email")


@pytest.fixture
def sms_adapter():
    return RecordingAdapter("sms")


@pytest.fixture
def adapters(email_adapter, sms_adapter):
    return {Channel.email: email_adapter, Channel.sms: sms_adapter}


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {API_TOKEN}"}


@pytest.fixture
def client(session_factory, adapters, cfg, monkeypatch):
    from fastapi.testclient import TestClient

    from reviewflow.config import settings
    from reviewflow.db import get_db, get_session_factory
    from reviewflow.main import app
    from reviewflow.review_requests.router import get_adapters
    from reviewflow.review_requests.tracking import get_settings

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "CRON_SECRET", cfg.CRON_SECRET)
    monkeypatch.setattr(settings, "DISPATCH_WORKERS", 1)
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", TWILIO_TOKEN)
    monkeypatch.setattr(settings, "TWILIO_SMS_FROM", cfg.TWILIO_SMS_FROM)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_adapters] = lambda: adapters
    app.dependency_overrides[get_settings] = lambda: cfg
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def twilio_post(client):
    """POST al webhook de SMS firmado como lo haría Twilio."""
    from twilio.request_validator import RequestValidator

    from reviewflow.config import settings

    def post(path, data):
        url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}{path}"
        signature = RequestValidator(TWILIO_TOKEN).compute_signature(url, data)
        return client.post(path, data=data, headers={"X-Twilio-Signature": signature})

    return post
