"""
Unit tests for PushCleanupService.

Tests invalid-device removal with the freshness window, processed-task
retention and feedback polling.
"""

import json
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from mobile_backend.src.models import ProcessedNotificationTask
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.push.apns_sender import (
    ApnsCommunicationError,
    ApnsSender,
)
from mobile_backend.src.services.push_cleanup_service import (
    DEVICE_CLEANUP_URL,
    PushCleanupService,
    purge_processed_tasks,
)
from mobile_backend.src.services.subscription_ids import DEFAULT_TOPIC


NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def cleanup_service(test_db_session, test_settings, subscription_service, device_subscriptions, task_queue):
    return PushCleanupService(
        test_db_session, test_settings, subscription_service, device_subscriptions, task_queue
    )


def _add_marker(db, name, processed_at):
    db.add(ProcessedNotificationTask(task_name=name, processed_at=processed_at))
    db.commit()


class TestRemoveDevices:
    """Tests for PushCleanupService.remove_devices."""

    def test_removes_stale_device_and_queries(
        self, cleanup_service, sample_device, prospective_search, device_subscriptions
    ):
        sub_id = "stale:query:q1"
        prospective_search.subscribe(DEFAULT_TOPIC, sub_id, 0, '(_kindName:"Message")', {"_kindName": "STRING"})
        sample_device(device_id="stale", subscription_ids=[sub_id], updated_at=NOW - timedelta(hours=5))

        assert cleanup_service.remove_devices(["stale"], now=NOW) == ["stale"]
        assert device_subscriptions.get("stale") is None
        assert prospective_search.list_subscriptions() == []

    def test_skips_recently_registered_device(self, cleanup_service, sample_device, device_subscriptions):
        sample_device(device_id="fresh", updated_at=NOW - timedelta(hours=3))

        assert cleanup_service.remove_devices(["fresh"], now=NOW) == []
        assert device_subscriptions.get("fresh") is not None

    def test_device_exactly_at_window_is_kept(self, cleanup_service, sample_device):
        sample_device(device_id="edge", updated_at=NOW - timedelta(hours=4))

        assert cleanup_service.remove_devices(["edge"], now=NOW) == []

    def test_unknown_and_empty_tokens_are_skipped(self, cleanup_service):
        assert cleanup_service.remove_devices(["", "nobody"], now=NOW) == []


class TestProcessedTaskRetention:
    """Tests for purging processed-task markers."""

    def test_retention_boundary(self, test_db_session, test_settings):
        _add_marker(test_db_session, "old", NOW - timedelta(hours=13))
        _add_marker(test_db_session, "edge", NOW - timedelta(hours=12))
        _add_marker(test_db_session, "recent", NOW - timedelta(hours=1))

        assert purge_processed_tasks(test_db_session, test_settings, now=NOW) == 1

        remaining = {row.task_name for row in test_db_session.query(ProcessedNotificationTask)}
        assert remaining == {"edge", "recent"}

    def test_deletes_across_batches(self, cleanup_service, test_db_session):
        for i in range(12):
            _add_marker(test_db_session, f"tsk_{i}", NOW - timedelta(days=1))

        assert cleanup_service.cleanup_processed_tasks(now=NOW) == 12
        assert test_db_session.query(ProcessedNotificationTask).count() == 0

    def test_nothing_to_delete(self, cleanup_service):
        assert cleanup_service.cleanup_processed_tasks(now=NOW) == 0


class TestFeedback:
    """Tests for PushCleanupService.process_feedback."""

    def test_inactive_devices_are_queued(self, cleanup_service, task_queue):
        sender = Mock(spec=ApnsSender)
        sender.feedback.return_value = ["a" * 64, "b" * 64]

        assert cleanup_service.process_feedback(sender) == 2

        [task] = task_queue.list_tasks(QueueName.DEVICE_TOKEN_CLEANUP)
        assert task.url == DEVICE_CLEANUP_URL
        assert json.loads(task.params["devices"]) == ["a" * 64, "b" * 64]

    def test_no_inactive_devices(self, cleanup_service, task_queue):
        sender = Mock(spec=ApnsSender)
        sender.feedback.return_value = []

        assert cleanup_service.process_feedback(sender) == 0
        assert task_queue.count() == 0

    def test_feedback_failure_is_logged(self, cleanup_service):
        sender = Mock(spec=ApnsSender)
        sender.feedback.side_effect = ApnsCommunicationError("down")

        assert cleanup_service.process_feedback(sender) == 0
