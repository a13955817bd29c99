"""Tests for review request status transitions."""

from datetime import datetime, timedelta, timezone

import pytest

from reviewflow.review_requests import repo
from reviewflow.review_requests.models import Channel, ReviewRequest, ReviewRequestStatus

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def request_row(db_session, business, customer):
    rr = ReviewRequest(
        business_id=business.id,
        customer_id=customer.id,
        channel=Channel.email,
        message="hi",
        tracking_token="tok-state-machine",
        review_link="https://app.example.com/email-track/click?t=tok-state-machine",
        status=ReviewRequestStatus.scheduled,
        best_send_at=T0,
    )
    db_session.add(rr)
    db_session.commit()
    return rr


def status_of(db, rr):
    db.expire_all()
    return db.get(ReviewRequest, rr.id).status


class TestTransitions:
    def test_happy_path(self, db_session, request_row):
        for i, status in enumerate([
            ReviewRequestStatus.sent,
            ReviewRequestStatus.opened,
            ReviewRequestStatus.clicked,
            ReviewRequestStatus.completed,
        ]):
            assert repo.transition(db_session, request_id=request_row.id, to_status=status, at=T0 + timedelta(hours=i))
            assert status_of(db_session, request_row) == status

        rr = db_session.get(ReviewRequest, request_row.id)
        assert rr.sent_at == T0
        assert rr.completed_at == T0 + timedelta(hours=3)

    def test_sent_can_jump_to_clicked(self, db_session, request_row):
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.sent, at=T0)
        assert repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.clicked, at=T0)

    def test_cannot_move_backward(self, db_session, request_row):
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.sent, at=T0)
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.clicked, at=T0)

        assert not repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.opened, at=T0)
        assert status_of(db_session, request_row) == ReviewRequestStatus.clicked

    def test_repeated_transition_is_noop(self, db_session, request_row):
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.sent, at=T0)
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.opened, at=T0)

        later = T0 + timedelta(hours=1)
        assert not repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.opened, at=later)
        db_session.expire_all()
        assert db_session.get(ReviewRequest, request_row.id).opened_at == T0

    def test_failed_only_from_scheduled_or_sent(self, db_session, request_row):
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.sent, at=T0)
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.opened, at=T0)

        assert not repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.failed, at=T0)
        assert status_of(db_session, request_row) == ReviewRequestStatus.opened

    def test_terminal_states_are_final(self, db_session, request_row):
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.failed, at=T0,
                        error_message="boom")

        for status in (ReviewRequestStatus.sent, ReviewRequestStatus.clicked, ReviewRequestStatus.completed):
            assert not repo.transition(db_session, request_id=request_row.id, to_status=status, at=T0)
        assert status_of(db_session, request_row) == ReviewRequestStatus.failed


class TestStats:
    def test_rates_over_delivered(self, db_session, business, customer, request_row):
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.sent, at=T0)
        repo.transition(db_session, request_id=request_row.id, to_status=ReviewRequestStatus.clicked, at=T0)

        other = ReviewRequest(
            business_id=business.id, customer_id=customer.id, channel=Channel.sms, message="hi",
            tracking_token="tok-2", review_link="x", status=ReviewRequestStatus.sent, best_send_at=T0,
        )
        db_session.add(other)
        db_session.commit()

        stats = repo.get_stats(db_session, business_id=business.id)
        assert stats["messages_sent"] == 2
        assert stats["counts"]["clicked"] == 1
        assert stats["click_rate"] == 0.5
        assert stats["completion_rate"] == 0.0
