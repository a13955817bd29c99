"""Tests for the dispatcher: claims, delivery, failure isolation, stale recovery."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reviewflow.db import Base
from reviewflow.models import AutomationTemplate, Business, Customer, TemplateStatus
from reviewflow.review_requests import repo
from reviewflow.review_requests.dispatcher import Dispatcher
from reviewflow.review_requests.models import (
    Channel,
    JobStatus,
    ReviewRequest,
    ReviewRequestStatus,
    ScheduledJob,
)
from reviewflow.review_requests.scheduler import schedule
from reviewflow.telemetry import list_events
from reviewflow.triggers.normalizer import TriggerEvent

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
DUE = T0 + timedelta(hours=24, minutes=1)


def schedule_one(db, business, customer, template, cfg, occurred_at=T0):
    event = TriggerEvent(
        business_id=business.id,
        customer_id=customer.id,
        trigger_type="job_completed",
        free_text="Roof repair job",
        occurred_at=occurred_at,
    )
    return schedule(db, business=business, customer=customer, template=template, event=event, cfg=cfg, now=T0)


def reload(db, model, id):
    db.expire_all()
    return db.get(model, id)


class TestTick:
    def test_due_job_is_sent_once(self, db_session, session_factory, business, customer, template, cfg,
                                  adapters, email_adapter):
        job = schedule_one(db_session, business, customer, template, cfg)
        dispatcher = Dispatcher(session_factory, adapters, cfg, max_workers=1)

        result = dispatcher.tick(now=DUE)

        assert result.sent == 1
        assert len(email_adapter.sent) == 1
        msg = email_adapter.sent[0]
        assert msg.to == "jane@example.com"
        assert msg.body == "Hi Jane, thanks for choosing Acme Roofing!"
        assert msg.pixel_url.startswith("https://app.example.com/email-track/open?t=")

        job = reload(db_session, ScheduledJob, job.id)
        rr = db_session.get(ReviewRequest, job.review_request_id)
        assert job.status == JobStatus.done
        assert job.attempts == 1
        assert rr.status == ReviewRequestStatus.sent
        assert rr.sent_at == DUE
        assert rr.provider_message_id == "email-1"
        assert list_events(db_session, business_id=business.id, event_type="review_request_sent")

    def test_job_not_yet_due_is_left_alone(self, db_session, session_factory, business, customer, template,
                                           cfg, adapters, email_adapter):
        job = schedule_one(db_session, business, customer, template, cfg)
        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=T0 + timedelta(hours=23))

        assert result.processed == 0
        assert email_adapter.sent == []
        assert reload(db_session, ScheduledJob, job.id).status == JobStatus.queued

    def test_second_tick_does_not_resend(self, db_session, session_factory, business, customer, template, cfg,
                                         adapters, email_adapter):
        schedule_one(db_session, business, customer, template, cfg)
        dispatcher = Dispatcher(session_factory, adapters, cfg, max_workers=1)

        dispatcher.tick(now=DUE)
        second = dispatcher.tick(now=DUE + timedelta(minutes=1))

        assert second.processed == 0
        assert len(email_adapter.sent) == 1

    def test_claim_is_exclusive(self, db_session, business, customer, template, cfg):
        job = schedule_one(db_session, business, customer, template, cfg)

        assert repo.claim_job(db_session, job_id=job.id, now=DUE) is True
        assert repo.claim_job(db_session, job_id=job.id, now=DUE) is False

    def test_lost_claim_is_skipped(self, db_session, session_factory, business, customer, template, cfg,
                                   adapters, email_adapter, monkeypatch):
        job = schedule_one(db_session, business, customer, template, cfg)
        # otra réplica lo reclamó justo después de listarlo
        original = repo.get_due_job_ids

        def racing_due_ids(db, **kwargs):
            ids = original(db, **kwargs)
            repo.claim_job(db, job_id=job.id, now=DUE)
            return ids

        monkeypatch.setattr(repo, "get_due_job_ids", racing_due_ids)
        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.conflicts == 1
        assert result.processed == 0
        assert email_adapter.sent == []

    def test_adapter_failure_marks_both_failed(self, db_session, session_factory, business, customer, template,
                                               cfg, adapters, email_adapter):
        email_adapter.fail_with = "timeout"
        job = schedule_one(db_session, business, customer, template, cfg)

        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.failed == 1
        job = reload(db_session, ScheduledJob, job.id)
        rr = db_session.get(ReviewRequest, job.review_request_id)
        assert job.status == JobStatus.failed
        assert "timeout" in job.error_message
        assert rr.status == ReviewRequestStatus.failed
        assert rr.failed_at == DUE
        assert list_events(db_session, business_id=business.id, event_type="review_request_failed")

    def test_one_failure_does_not_stop_the_batch(self, db_session, session_factory, business, customer,
                                                 template, cfg, adapters, email_adapter, sms_adapter):
        sms_only = Customer(business_id=business.id, full_name="Sam", phone="+14155550000")
        db_session.add(sms_only)
        db_session.commit()

        sms_adapter.fail_with = "provider rejected"
        schedule_one(db_session, business, sms_only, template, cfg)
        schedule_one(db_session, business, customer, template, cfg)

        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.processed == 2
        assert result.sent == 1
        assert result.failed == 1
        assert len(email_adapter.sent) == 1

    def test_request_no_longer_scheduled_is_not_resent(self, db_session, session_factory, business, customer,
                                                       template, cfg, adapters, email_adapter):
        job = schedule_one(db_session, business, customer, template, cfg)
        repo.transition(db_session, request_id=job.review_request_id, to_status=ReviewRequestStatus.sent, at=T0)

        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.skipped == 1
        assert email_adapter.sent == []
        assert reload(db_session, ScheduledJob, job.id).status == JobStatus.done


class TestStaleClaims:
    def _stuck(self, db, job_id, claimed_at, attempts):
        job = db.get(ScheduledJob, job_id)
        job.status = JobStatus.running
        job.claimed_at = claimed_at
        job.attempts = attempts
        db.commit()

    def test_stale_job_is_reclaimed_once(self, db_session, session_factory, business, customer, template, cfg,
                                         adapters, email_adapter):
        job = schedule_one(db_session, business, customer, template, cfg)
        self._stuck(db_session, job.id, DUE - timedelta(minutes=30), attempts=1)

        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.reclaimed == 1
        assert result.sent == 1
        job = reload(db_session, ScheduledJob, job.id)
        assert job.status == JobStatus.done
        assert job.attempts == 2

    def test_stale_job_past_budget_is_failed(self, db_session, session_factory, business, customer, template,
                                             cfg, adapters, email_adapter):
        job = schedule_one(db_session, business, customer, template, cfg)
        self._stuck(db_session, job.id, DUE - timedelta(minutes=30), attempts=2)

        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.expired == 1
        assert email_adapter.sent == []
        job = reload(db_session, ScheduledJob, job.id)
        rr = db_session.get(ReviewRequest, job.review_request_id)
        assert job.status == JobStatus.failed
        assert rr.status == ReviewRequestStatus.failed

    def test_recent_claim_is_not_touched(self, db_session, session_factory, business, customer, template, cfg,
                                         adapters, email_adapter):
        job = schedule_one(db_session, business, customer, template, cfg)
        self._stuck(db_session, job.id, DUE - timedelta(minutes=2), attempts=1)

        result = Dispatcher(session_factory, adapters, cfg, max_workers=1).tick(now=DUE)

        assert result.processed == 0
        assert reload(db_session, ScheduledJob, job.id).status == JobStatus.running


@pytest.fixture
def file_session_factory(tmp_path):
    # fichero real: cada hilo del pool abre su propia conexión
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    engine.dispose()


class TestThreadPool:
    def test_parallel_batch_with_mixed_outcomes(self, file_session_factory, cfg, adapters, email_adapter,
                                                sms_adapter):
        sms_adapter.fail_with = "carrier rejected"

        with file_session_factory() as db:
            business = Business(name="Acme Roofing", email="hello@acmeroofing.com", google_place_id="ChIJtestplace")
            db.add(business)
            db.commit()
            template = AutomationTemplate(
                business_id=business.id, key="job_completed", name="Follow-up", status=TemplateStatus.active,
                channels=["email", "sms"], trigger_type="job_completed",
                config={"message_body": "Hi {{customer.first_name}}!", "delay_hours": 24}, service_types=[],
            )
            db.add(template)
            customers = [
                Customer(business_id=business.id, full_name=f"Mail {i}", email=f"mail{i}@example.com")
                for i in range(6)
            ] + [
                Customer(business_id=business.id, full_name=f"Text {i}", phone=f"+1415555000{i}")
                for i in range(4)
            ]
            db.add_all(customers)
            db.commit()
            for c in customers:
                schedule_one(db, business, c, template, cfg)

        dispatcher = Dispatcher(file_session_factory, adapters, cfg, max_workers=4)
        result = dispatcher.tick(now=DUE)

        assert result.processed == 10
        assert result.sent == 6
        assert result.failed == 4
        assert len(email_adapter.sent) == 6
        assert len({m.to for m in email_adapter.sent}) == 6

        with file_session_factory() as db:
            jobs = db.query(ScheduledJob).all()
            assert {j.status for j in jobs} == {JobStatus.done, JobStatus.failed}
            assert all(j.attempts == 1 for j in jobs)
            for rr in db.query(ReviewRequest).all():
                expected = ReviewRequestStatus.sent if rr.channel == Channel.email else ReviewRequestStatus.failed
                assert rr.status == expected

        assert dispatcher.tick(now=DUE + timedelta(minutes=1)).processed == 0
        assert len(email_adapter.sent) == 6
