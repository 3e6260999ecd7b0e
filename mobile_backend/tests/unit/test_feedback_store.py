"""
Unit tests for ApnsFeedbackStore.
"""

from datetime import datetime

import pytest

from mobile_backend.src.models import ApnsFeedbackToken
from mobile_backend.src.services.push.feedback_store import ApnsFeedbackStore


EARLY = datetime(2026, 3, 1, 12, 0, 0)
LATE = datetime(2026, 3, 1, 12, 5, 0)


@pytest.fixture
def store(test_session_factory):
    return ApnsFeedbackStore(test_session_factory)


class TestRecord:
    """Tests for ApnsFeedbackStore.record."""

    def test_duplicates_are_collapsed(self, store, test_db_session):
        assert store.record(["a" * 64, "a" * 64, "", "b" * 64]) == 2
        assert test_db_session.query(ApnsFeedbackToken).count() == 2

    def test_rereported_token_gets_newer_timestamp(self, store, test_db_session):
        store.record(["a" * 64], reported_at=EARLY)
        store.record(["a" * 64], reported_at=LATE)

        test_db_session.expire_all()
        [row] = test_db_session.query(ApnsFeedbackToken).all()
        assert row.reported_at == LATE

    def test_nothing_to_record(self, store, test_db_session):
        assert store.record([]) == 0
        assert test_db_session.query(ApnsFeedbackToken).count() == 0


class TestDrain:
    """Tests for ApnsFeedbackStore.drain."""

    def test_oldest_first_then_empty(self, store, test_db_session):
        store.record(["c" * 64], reported_at=LATE)
        store.record(["b" * 64, "a" * 64], reported_at=EARLY)

        assert store.drain() == ["a" * 64, "b" * 64, "c" * 64]
        assert store.drain() == []
        assert test_db_session.query(ApnsFeedbackToken).count() == 0

    def test_drain_from_another_store_instance(self, store, test_session_factory):
        store.record(["a" * 64])

        assert ApnsFeedbackStore(test_session_factory).drain() == ["a" * 64]
        assert store.drain() == []
