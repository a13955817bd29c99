"""Tests for the event normalizer."""

from datetime import datetime, timedelta, timezone

import pytest

from reviewflow.errors import InvalidEvent, TenantMismatch
from reviewflow.models import Customer
from reviewflow.triggers.normalizer import (
    RawEvent,
    canonical_trigger_type,
    extract_free_text,
    normalize,
    parse_occurred_at,
)

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class TestCanonicalTriggerType:
    def test_canonical_name_passes(self):
        assert canonical_trigger_type("job_completed") == "job_completed"

    def test_crm_alias_is_mapped(self):
        assert canonical_trigger_type("invoice.paid") == "invoice_paid"
        assert canonical_trigger_type("Job.Completed") == "job_completed"

    def test_unknown_rejected(self):
        with pytest.raises(InvalidEvent):
            canonical_trigger_type("bogus_event")

    def test_empty_rejected(self):
        with pytest.raises(InvalidEvent):
            canonical_trigger_type("  ")


class TestFreeText:
    def test_collects_known_keys_and_line_items(self):
        data = {
            "description": "Roof repair job",
            "notes": "  back side  ",
            "line_items": [{"description": "Gutter cleaning"}, {"name": "Shingles"}, "ignored"],
            "amount": 120,
        }
        text = extract_free_text(data)
        assert text == "Roof repair job back side Gutter cleaning Shingles"

    def test_empty_payload(self):
        assert extract_free_text(None) == ""


class TestOccurredAt:
    def test_defaults_to_now(self):
        assert parse_occurred_at(None, now=T0) == T0

    def test_iso_string_with_z(self):
        dt = parse_occurred_at("2026-01-05T10:00:00Z", now=T0)
        assert dt == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        dt = parse_occurred_at(datetime(2026, 1, 5, 10, 0), now=T0)
        assert dt.tzinfo is not None

    def test_garbage_rejected(self):
        with pytest.raises(InvalidEvent):
            parse_occurred_at("yesterday-ish", now=T0)


class TestNormalize:
    def test_manual_event(self, db_session, business, customer):
        raw = RawEvent(
            source="manual",
            event_type="job_completed",
            customer_id=customer.id,
            data={"description": "Roof repair job"},
        )
        event = normalize(db_session, raw, business_id=business.id, now=T0)

        assert event.business_id == business.id
        assert event.customer_id == customer.id
        assert event.trigger_type == "job_completed"
        assert event.free_text == "Roof repair job"
        assert event.occurred_at == T0
        assert event.template_id is None

    def test_resolves_customer_by_email(self, db_session, business, customer):
        raw = RawEvent(source="zapier", event_type="invoice.paid", customer_email="JANE@example.com")
        event = normalize(db_session, raw, business_id=business.id, now=T0)
        assert event.customer_id == customer.id
        assert event.trigger_type == "invoice_paid"

    def test_stored_email_case_does_not_matter(self, db_session, business):
        mixed = Customer(business_id=business.id, full_name="Mixed Case", email="Mixed.Case@Example.com")
        db_session.add(mixed)
        db_session.commit()

        raw = RawEvent(source="zapier", event_type="job_completed", customer_email="mixed.case@example.com")
        assert normalize(db_session, raw, business_id=business.id, now=T0).customer_id == mixed.id

    def test_dedup_ref_prefers_external_id(self, db_session, business, customer):
        raw = RawEvent(source="jobber", event_type="job.completed", customer_id=customer.id,
                       occurred_at="2026-01-05T10:00:00Z", data={"id": "job_42"})
        assert normalize(db_session, raw, business_id=business.id, now=T0).dedup_ref == "jobber:job_42"

    def test_dedup_ref_without_timestamp_is_stable(self, db_session, business, customer):
        raw = RawEvent(source="jobber", event_type="job.completed", customer_id=customer.id)

        first = normalize(db_session, raw, business_id=business.id, now=T0)
        later = normalize(db_session, raw, business_id=business.id, now=T0 + timedelta(seconds=30))

        assert first.occurred_at != later.occurred_at
        assert first.dedup_ref == later.dedup_ref == "untimed:job_completed"

    def test_customer_of_other_business_is_tenant_mismatch(self, db_session, business, other_business):
        foreign = Customer(business_id=other_business.id, full_name="Foreign", email="f@example.com")
        db_session.add(foreign)
        db_session.commit()

        raw = RawEvent(source="manual", event_type="job_completed", customer_id=foreign.id)
        with pytest.raises(TenantMismatch):
            normalize(db_session, raw, business_id=business.id, now=T0)

    def test_payload_business_id_must_match_caller(self, db_session, business, customer, other_business):
        raw = RawEvent(
            source="jobber",
            event_type="job_completed",
            customer_id=customer.id,
            business_id=other_business.id,
        )
        with pytest.raises(TenantMismatch):
            normalize(db_session, raw, business_id=business.id, now=T0)

    def test_missing_customer_reference(self, db_session, business):
        raw = RawEvent(source="manual", event_type="job_completed")
        with pytest.raises(InvalidEvent):
            normalize(db_session, raw, business_id=business.id, now=T0)

    def test_manual_trigger_carries_template_id(self, db_session, business, customer):
        raw = RawEvent(
            source="manual",
            event_type="manual_trigger",
            customer_id=customer.id,
            data={"template_id": "42"},
        )
        event = normalize(db_session, raw, business_id=business.id, now=T0)
        assert event.template_id == 42

    def test_occurred_at_from_payload(self, db_session, business, customer):
        raw = RawEvent(
            source="jobber",
            event_type="job.completed",
            customer_id=customer.id,
            data={"completed_at": "2026-01-04T09:30:00+00:00"},
        )
        event = normalize(db_session, raw, business_id=business.id, now=T0)
        assert event.occurred_at == datetime(2026, 1, 4, 9, 30, tzinfo=timezone.utc)
