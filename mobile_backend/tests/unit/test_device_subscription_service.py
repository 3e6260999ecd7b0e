"""
Unit tests for DeviceSubscriptionService.

Tests registration, read-through caching, deletion and the paged
clear-all sweep.
"""

import json
from datetime import datetime, timedelta

import pytest
from freezegun import freeze_time

from mobile_backend.src.models import DeviceSubscription, DeviceType
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.device_subscription_service import (
    DeviceSubscriptionService,
    SweepCursor,
)
from mobile_backend.src.services.subscription_ids import (
    REQUEST_TYPE_DEVICE_SUB,
    REQUEST_TYPE_PSI_SUB,
    SUBSCRIPTION_REMOVAL_URL,
)
from mobile_backend.src.utils.cache import MemoryCache


def _removal_tasks(task_queue, request_type):
    return [
        task for task in task_queue.list_tasks(QueueName.SUBSCRIPTION_REMOVAL)
        if task.params["type"] == request_type
    ]


# ============================================================================
# Test: create
# ============================================================================


class TestCreate:
    """Tests for DeviceSubscriptionService.create."""

    def test_creates_record(self, device_subscriptions):
        record = device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")

        assert record.device_id == "dev1"
        assert record.device_type == DeviceType.ANDROID
        assert record.subscription_ids == {"dev1:query:q1"}

    def test_strips_ios_prefix(self, device_subscriptions):
        record = device_subscriptions.create(DeviceType.IOS, "ios_abc", "ios_abc:query:q1")

        assert record.device_id == "abc"
        assert device_subscriptions.get_subscription_ids("abc") == {"ios_abc:query:q1"}

    def test_adds_to_existing_record(self, device_subscriptions):
        device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")
        record = device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q2")

        assert record.subscription_ids == {"dev1:query:q1", "dev1:query:q2"}

    def test_repeated_id_changes_nothing(self, device_subscriptions):
        with freeze_time("2026-01-01 10:00:00") as frozen:
            device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")
            frozen.tick(timedelta(hours=1))
            record = device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")

        assert record.updated_at == datetime(2026, 1, 1, 10, 0, 0)
        assert record.subscription_ids == {"dev1:query:q1"}

    @pytest.mark.parametrize("device_id,sub_id", [("", "x:query:q"), ("dev1", "")])
    def test_empty_ids_return_none(self, device_subscriptions, device_id, sub_id):
        assert device_subscriptions.create(DeviceType.ANDROID, device_id, sub_id) is None


# ============================================================================
# Test: get / delete
# ============================================================================


class TestGetAndDelete:
    """Tests for read-through lookups and deletion."""

    def test_get_serves_from_cache(self, device_subscriptions, test_db_session):
        device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")
        # remove behind the service's back; the cached copy survives
        test_db_session.query(DeviceSubscription).delete()
        test_db_session.commit()

        record = device_subscriptions.get("dev1")
        assert record is not None
        assert record.subscription_ids == {"dev1:query:q1"}

    def test_get_loads_and_caches_on_miss(self, device_subscriptions, sample_device, test_cache):
        sample_device(device_id="dev2", subscription_ids=["dev2:query:q1"])
        test_cache.clear()

        assert device_subscriptions.get("dev2").subscription_ids == {"dev2:query:q1"}
        assert test_cache.get("device_subscription:dev2") is not None

    def test_get_unknown(self, device_subscriptions):
        assert device_subscriptions.get("nobody") is None
        assert device_subscriptions.get_subscription_ids("nobody") == set()

    def test_get_empty_id_rejected(self, device_subscriptions):
        with pytest.raises(ValueError):
            device_subscriptions.get("")

    def test_delete_removes_store_and_cache(self, device_subscriptions, test_cache):
        device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")
        device_subscriptions.delete("dev1")

        assert test_cache.get("device_subscription:dev1") is None
        assert device_subscriptions.get("dev1") is None

    def test_delete_missing_is_ignored(self, device_subscriptions):
        device_subscriptions.delete("nobody")


# ============================================================================
# Test: sweep
# ============================================================================


class TestSweepCursor:
    """Tests for cursor tokens."""

    def test_token_round_trip(self):
        cursor = SweepCursor(after_device_id="dev5")
        assert SweepCursor.from_token(cursor.to_token()) == cursor

    def test_empty_token_is_first_page(self):
        assert SweepCursor.from_token("") is None
        assert SweepCursor.from_token(None) is None

    @pytest.mark.parametrize("token", ["not-a-token!", "e30="])
    def test_invalid_tokens(self, token):
        with pytest.raises(ValueError):
            SweepCursor.from_token(token)


class TestDeleteAllContinuously:
    """Tests for the paged clear-all sweep."""

    @pytest.fixture
    def paged_service(self, test_db_session, test_cache, task_queue):
        return DeviceSubscriptionService(test_db_session, test_cache, task_queue, page_size=3)

    @pytest.fixture
    def seven_devices(self, sample_device):
        created_at = datetime.utcnow() - timedelta(days=1)
        return [
            sample_device(
                device_id=f"dev{i}",
                subscription_ids=[f"dev{i}:query:q1"],
                updated_at=created_at,
            )
            for i in range(7)
        ]

    def test_sweeps_in_pages(self, paged_service, seven_devices, task_queue, test_db_session):
        cutoff = datetime.utcnow()

        cursor = paged_service.delete_all_continuously(cutoff, None)
        assert cursor == SweepCursor(after_device_id="dev2")
        assert test_db_session.query(DeviceSubscription).count() == 4

        cursor = paged_service.delete_all_continuously(cutoff, cursor)
        assert cursor == SweepCursor(after_device_id="dev5")

        cursor = paged_service.delete_all_continuously(cutoff, cursor)
        assert cursor is None
        assert test_db_session.query(DeviceSubscription).count() == 0

        # a next-page task follows each full page only
        page_tasks = _removal_tasks(task_queue, REQUEST_TYPE_DEVICE_SUB)
        assert len(page_tasks) == 2
        assert page_tasks[0].url == SUBSCRIPTION_REMOVAL_URL
        assert page_tasks[0].params["cursor"] == SweepCursor("dev2").to_token()
        assert page_tasks[0].params["timeStamp"] == cutoff.isoformat()

        unsubscribed = []
        for task in _removal_tasks(task_queue, REQUEST_TYPE_PSI_SUB):
            unsubscribed.extend(json.loads(task.params["subIds"]))
        assert sorted(unsubscribed) == [f"dev{i}:query:q1" for i in range(7)]

    def test_keeps_devices_updated_after_cutoff(self, paged_service, sample_device, test_db_session):
        cutoff = datetime.utcnow()
        sample_device(device_id="old", updated_at=cutoff - timedelta(minutes=1))
        sample_device(device_id="new", updated_at=cutoff + timedelta(minutes=1))

        assert paged_service.delete_all_continuously(cutoff, None) is None
        remaining = [record.device_id for record in test_db_session.query(DeviceSubscription)]
        assert remaining == ["new"]

    def test_full_last_page_ends_with_empty_page(self, paged_service, sample_device, task_queue):
        cutoff = datetime.utcnow()
        for i in range(3):
            sample_device(device_id=f"dev{i}", updated_at=cutoff - timedelta(hours=1))

        cursor = paged_service.delete_all_continuously(cutoff, None)
        assert cursor is not None
        assert paged_service.delete_all_continuously(cutoff, cursor) is None
        assert len(_removal_tasks(task_queue, REQUEST_TYPE_DEVICE_SUB)) == 1

    def test_evicts_cached_records(self, paged_service, device_subscriptions, test_cache):
        device_subscriptions.create(DeviceType.ANDROID, "dev1", "dev1:query:q1")
        assert test_cache.get("device_subscription:dev1") is not None

        paged_service.delete_all_continuously(datetime.utcnow() + timedelta(seconds=1), None)
        assert test_cache.get("device_subscription:dev1") is None

    def test_evicts_cache_after_store_delete(self, test_db_session, task_queue, sample_device):
        """A concurrent read between eviction and commit must not re-cache a doomed record."""
        rows_at_eviction = []

        class RecordingCache(MemoryCache):
            def delete_many(self, keys):
                rows_at_eviction.append(test_db_session.query(DeviceSubscription).count())
                return super().delete_many(keys)

        service = DeviceSubscriptionService(test_db_session, RecordingCache(), task_queue, page_size=3)
        sample_device(device_id="dev1", updated_at=datetime.utcnow() - timedelta(hours=1))

        service.delete_all_continuously(datetime.utcnow(), None)

        assert rows_at_eviction == [0]

    def test_enqueue_delete_all_starts_at_first_page(self, device_subscriptions, task_queue):
        device_subscriptions.enqueue_delete_all()

        tasks = _removal_tasks(task_queue, REQUEST_TYPE_DEVICE_SUB)
        assert len(tasks) == 1
        assert tasks[0].params["cursor"] == ""

    def test_psi_unsubscribes_are_chunked(self, device_subscriptions, task_queue):
        ids = [f"dev:query:q{i}" for i in range(251)]

        assert device_subscriptions.enqueue_delete_psi_subscriptions(ids) == 2
        chunks = [json.loads(t.params["subIds"]) for t in _removal_tasks(task_queue, REQUEST_TYPE_PSI_SUB)]
        assert [len(chunk) for chunk in chunks] == [250, 1]
