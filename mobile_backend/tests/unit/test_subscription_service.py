"""
Unit tests for SubscriptionService and the subscription id helpers.

Tests device teardown, explicit unsubscribes and the subscription-removal
task handler.
"""

import json
from datetime import datetime, timedelta

import pytest

from mobile_backend.src.models import DeviceType
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.device_subscription_service import SweepCursor
from mobile_backend.src.services.exceptions import ValidationError
from mobile_backend.src.services.subscription_ids import (
    DEFAULT_TOPIC,
    REQUEST_TYPE_DEVICE_SUB,
    REQUEST_TYPE_PSI_SUB,
    construct_sub_id,
    extract_reg_id,
    get_mobile_type,
)


QUERY = '(_kindName:"Message")'
SCHEMA = {"_kindName": "STRING"}


@pytest.fixture
def subscribed_device(prospective_search, device_subscriptions):
    """Device "dev1" holding two live continuous queries."""
    for query_id in ("q1", "q2"):
        sub_id = construct_sub_id("dev1", query_id)
        prospective_search.subscribe(DEFAULT_TOPIC, sub_id, 0, QUERY, SCHEMA)
        device_subscriptions.create(DeviceType.ANDROID, "dev1", sub_id)
    return "dev1"


# ============================================================================
# Test: subscription ids
# ============================================================================


class TestSubscriptionIds:
    """Tests for the subscription id format."""

    def test_construct(self):
        assert construct_sub_id("reg", "q1") == "reg:query:q1"

    @pytest.mark.parametrize("reg_id,query_id", [("", "q1"), ("reg", "")])
    def test_construct_rejects_empty(self, reg_id, query_id):
        with pytest.raises(ValueError):
            construct_sub_id(reg_id, query_id)

    @pytest.mark.parametrize("sub_id,expected", [
        ("ios_abc:query:q1", "abc"),
        ("abc:query:q1", "abc"),
        ("ios_abc", "abc"),
    ])
    def test_extract_reg_id(self, sub_id, expected):
        assert extract_reg_id(sub_id) == expected

    def test_extract_rejects_empty(self):
        with pytest.raises(ValueError):
            extract_reg_id("")

    def test_mobile_type(self):
        assert get_mobile_type("ios_abc:query:q1") == DeviceType.IOS
        assert get_mobile_type("abc:query:q1") == DeviceType.ANDROID


# ============================================================================
# Test: teardown
# ============================================================================


class TestTeardown:
    """Tests for device teardown and unsubscribes."""

    def test_clear_removes_queries_and_record(
        self, subscription_service, subscribed_device, prospective_search, device_subscriptions
    ):
        subscription_service.clear_subscription_and_device_entity([subscribed_device])

        assert prospective_search.list_subscriptions() == []
        assert device_subscriptions.get(subscribed_device) is None

    def test_unsubscribe_device_accepts_prefixed_id(
        self, subscription_service, prospective_search, device_subscriptions
    ):
        sub_id = construct_sub_id("ios_abc", "q1")
        prospective_search.subscribe(DEFAULT_TOPIC, sub_id, 0, QUERY, SCHEMA)
        device_subscriptions.create(DeviceType.IOS, "ios_abc", sub_id)

        subscription_service.unsubscribe_device("ios_abc")

        assert device_subscriptions.get("abc") is None
        assert prospective_search.get_subscription(DEFAULT_TOPIC, sub_id) is None

    def test_unsubscribe_device_rejects_empty(self, subscription_service):
        with pytest.raises(ValidationError):
            subscription_service.unsubscribe_device("")

    def test_unsubscribe_unknown_subscription_is_logged_only(self, subscription_service):
        subscription_service.unsubscribe_subscription("nobody:query:q1")

    def test_clear_all_enqueues_first_page(self, subscription_service, task_queue):
        subscription_service.clear_all_subscription_and_device_entity()

        tasks = task_queue.list_tasks(QueueName.SUBSCRIPTION_REMOVAL)
        assert len(tasks) == 1
        assert tasks[0].params["type"] == REQUEST_TYPE_DEVICE_SUB
        assert tasks[0].params["cursor"] == ""


# ============================================================================
# Test: subscription-removal tasks
# ============================================================================


class TestProcessRemovalRequest:
    """Tests for SubscriptionService.process_removal_request."""

    @pytest.mark.parametrize("request_type", [None, "", "bogus"])
    def test_rejects_missing_or_unknown_type(self, subscription_service, request_type):
        with pytest.raises(ValidationError):
            subscription_service.process_removal_request(request_type)

    def test_psi_request_unsubscribes_listed_ids(
        self, subscription_service, subscribed_device, prospective_search
    ):
        subscription_service.process_removal_request(
            REQUEST_TYPE_PSI_SUB,
            sub_ids=json.dumps(["dev1:query:q1", "unknown:query:q9"]),
        )

        remaining = [s.subscription_id for s in prospective_search.list_subscriptions()]
        assert remaining == ["dev1:query:q2"]

    @pytest.mark.parametrize("sub_ids", [None, "", "not json", '{"a": 1}'])
    def test_psi_request_with_bad_ids_is_dropped(
        self, subscription_service, subscribed_device, prospective_search, sub_ids
    ):
        subscription_service.process_removal_request(REQUEST_TYPE_PSI_SUB, sub_ids=sub_ids)

        assert len(prospective_search.list_subscriptions()) == 2

    def test_first_page_sets_clear_all_marker(
        self, subscription_service, sample_device, backend_config, device_subscriptions
    ):
        cutoff = datetime.utcnow()
        sample_device(device_id="old", updated_at=cutoff - timedelta(hours=1))

        subscription_service.process_removal_request(
            REQUEST_TYPE_DEVICE_SUB, cursor="", timestamp=cutoff.isoformat()
        )

        assert backend_config.get_last_subscription_delete_all_time() == cutoff
        assert device_subscriptions.get("old") is None

    def test_device_subscribed_before_first_page_stays_active(
        self, subscription_service, sample_device, backend_config, device_subscriptions
    ):
        requested_at = datetime.utcnow() - timedelta(seconds=30)
        sample_device(device_id="fresh", updated_at=requested_at + timedelta(seconds=10))

        subscription_service.process_removal_request(
            REQUEST_TYPE_DEVICE_SUB, cursor="", timestamp=requested_at.isoformat()
        )

        record = device_subscriptions.get("fresh")
        assert record is not None
        assert record.updated_at > backend_config.get_last_subscription_delete_all_time()

    def test_replayed_first_page_keeps_marker(self, subscription_service, backend_config):
        cutoff = datetime.utcnow() - timedelta(minutes=5)

        for _ in range(2):
            subscription_service.process_removal_request(
                REQUEST_TYPE_DEVICE_SUB, cursor="", timestamp=cutoff.isoformat()
            )

        assert backend_config.get_last_subscription_delete_all_time() == cutoff

    def test_later_page_keeps_marker(self, subscription_service, backend_config):
        subscription_service.process_removal_request(
            REQUEST_TYPE_DEVICE_SUB,
            cursor=SweepCursor("dev2").to_token(),
            timestamp=datetime.utcnow().isoformat(),
        )

        assert backend_config.get_last_subscription_delete_all_time() is None

    def test_timezone_aware_timestamp(self, subscription_service, sample_device, device_subscriptions):
        sample_device(device_id="old", updated_at=datetime.utcnow() - timedelta(hours=1))

        subscription_service.process_removal_request(
            REQUEST_TYPE_DEVICE_SUB,
            cursor="",
            timestamp=(datetime.utcnow().isoformat() + "+00:00"),
        )

        assert device_subscriptions.get("old") is None

    @pytest.mark.parametrize("cursor,timestamp", [
        (None, "2026-01-01T00:00:00"),
        ("", None),
        ("", "yesterday"),
        ("garbage!", "2026-01-01T00:00:00"),
    ])
    def test_device_request_with_bad_params_is_dropped(
        self, subscription_service, sample_device, device_subscriptions, backend_config,
        cursor, timestamp,
    ):
        sample_device(device_id="old", updated_at=datetime(2020, 1, 1))

        subscription_service.process_removal_request(
            REQUEST_TYPE_DEVICE_SUB, cursor=cursor, timestamp=timestamp
        )

        assert device_subscriptions.get("old") is not None
        assert backend_config.get_last_subscription_delete_all_time() is None
