"""
Integration tests for the entities API.

Covers the full path from a FUTURE query registration through a matching
write, dispatch of the match and delivery to the iOS gateway.
"""

import json
import threading

import httpx
import pytest

from mobile_backend.src.config.settings import get_settings
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.delivery_worker import ALERT_MESSAGE, DeliveryWorker
from mobile_backend.src.services.push.apns_sender import ApnsSender
from mobile_backend.src.services.push_task_dispatcher import PushTaskDispatcher


DEVICE_TOKEN = "d" * 64
REG_ID = f"ios_{DEVICE_TOKEN}"
SUB_ID = f"{REG_ID}:query:q1"


def _register_future_query(client, reg_id=REG_ID, query_id="q1"):
    return client.post("/api/v1/entities/list", json={
        "kindName": "Message",
        "filterDto": {"operator": "GE", "values": ["priority", 3]},
        "scope": "FUTURE",
        "regId": reg_id,
        "queryId": query_id,
    })


class TestContinuousQueryFlow:
    """Register, write, dispatch, deliver."""

    def test_matching_write_reaches_the_device(
        self, test_client, task_queue, test_session_factory, test_settings, test_cache
    ):
        response = _register_future_query(test_client)
        assert response.status_code == 200
        assert response.json() == {"entries": []}

        response = test_client.post("/api/v1/entities/Message", json={"id": "m-1", "properties": {"priority": 5}})
        assert response.status_code == 200

        [match_task] = task_queue.list_tasks(QueueName.PROSPECTIVE_SEARCH)
        assert match_task.params == {"id": [SUB_ID]}

        dispatcher = PushTaskDispatcher(test_session_factory, test_client, test_settings)
        assert dispatcher.dispatch_once() == 1

        [delivery_task] = task_queue.list_tasks(QueueName.NOTIFICATION_DELIVERY)
        assert delivery_task.params == {"alert": SUB_ID, "devices": json.dumps([DEVICE_TOKEN])}

        sent = []

        def gateway(request):
            sent.append(request)
            return httpx.Response(200)

        worker = DeliveryWorker(
            session_factory=test_session_factory,
            apns_sender=ApnsSender("", None, "com.example.mobile", "https://apns.test",
                                   transport=httpx.MockTransport(gateway)),
            cache=test_cache,
            settings=test_settings,
            shutdown_event=threading.Event(),
        )
        assert worker.process_batch_of_tasks() is True

        [request] = sent
        assert request.url.path == f"/3/device/{DEVICE_TOKEN}"
        assert json.loads(request.content) == {"aps": {"alert": ALERT_MESSAGE}, "hiddenMessage": SUB_ID}
        assert task_queue.count() == 0

    def test_non_matching_write_enqueues_nothing(self, test_client, task_queue):
        _register_future_query(test_client)

        test_client.post("/api/v1/entities/Message", json={"id": "m-1", "properties": {"priority": 1}})

        assert task_queue.count(QueueName.PROSPECTIVE_SEARCH) == 0

    def test_other_kinds_do_not_match(self, test_client, task_queue):
        _register_future_query(test_client)

        test_client.post("/api/v1/entities/Note", json={"id": "n-1", "properties": {"priority": 5}})

        assert task_queue.count(QueueName.PROSPECTIVE_SEARCH) == 0


class TestListEntities:
    """Tests for POST /api/v1/entities/list."""

    @pytest.fixture(autouse=True)
    def messages(self, test_client):
        for entity_id, priority in (("m-1", 1), ("m-2", 5), ("m-3", 3)):
            test_client.post(
                "/api/v1/entities/Message",
                json={"id": entity_id, "properties": {"priority": priority}},
            )

    def test_past_query(self, test_client):
        response = test_client.post("/api/v1/entities/list", json={
            "kindName": "Message",
            "filterDto": {"operator": "GE", "values": ["priority", 3]},
            "sortedPropertyName": "priority",
            "sortAscending": True,
        })

        assert response.status_code == 200
        entries = response.json()["entries"]
        assert [entry["id"] for entry in entries] == ["m-3", "m-2"]
        assert entries[0]["kindName"] == "Message"
        assert entries[0]["properties"] == {"priority": 3}

    def test_future_and_past(self, test_client):
        response = _register_future_query(test_client)
        assert response.json() == {"entries": []}

        response = test_client.post("/api/v1/entities/list", json={
            "kindName": "Message", "scope": "FUTURE_AND_PAST", "regId": "android1", "queryId": "q2",
        })
        assert len(response.json()["entries"]) == 3

    def test_missing_ids_for_future_scope(self, test_client):
        response = test_client.post("/api/v1/entities/list", json={"kindName": "Message", "scope": "FUTURE"})

        assert response.status_code == 422
        assert response.json()["error"] == "Validation Error"

    def test_malformed_filter(self, test_client):
        response = test_client.post("/api/v1/entities/list", json={
            "kindName": "Message",
            "filterDto": {"operator": "GE", "values": ["priority"]},
        })

        assert response.status_code == 422

    def test_reserved_kind(self, test_client):
        response = test_client.post("/api/v1/entities/list", json={"kindName": "_DeviceSubscription"})
        assert response.status_code == 400

    def test_unusable_property_for_future_query(self, test_client):
        response = test_client.post("/api/v1/entities/list", json={
            "kindName": "Message",
            "filterDto": {"operator": "EQ", "values": ["has space", 1]},
            "scope": "FUTURE",
            "regId": "android1",
            "queryId": "q1",
        })
        assert response.status_code == 400


class TestSaveAndGet:
    """Tests for POST /api/v1/entities/{kind} and GET /api/v1/entities/{kind}/{id}."""

    def test_round_trip(self, test_client):
        saved = test_client.post(
            "/api/v1/entities/Message",
            json={"id": "m-1", "kindName": "Ignored", "properties": {"text": "hi"}},
            headers={"X-User-Id": "USER:alice"},
        ).json()
        assert saved["kindName"] == "Message"
        assert saved["createdBy"] == "USER:alice"

        response = test_client.get("/api/v1/entities/Message/m-1")
        assert response.status_code == 200
        assert response.json()["properties"] == {"text": "hi"}

    def test_unknown_record(self, test_client):
        assert test_client.get("/api/v1/entities/Message/nope").status_code == 404

    def test_private_kind_is_per_user(self, test_client):
        test_client.post(
            "/api/v1/entities/[private]Note",
            json={"id": "n-1", "properties": {}},
            headers={"X-User-Id": "USER:alice"},
        )

        assert test_client.get(
            "/api/v1/entities/[private]Note/n-1", headers={"X-User-Id": "USER:alice"}
        ).status_code == 200
        assert test_client.get(
            "/api/v1/entities/[private]Note/n-1", headers={"X-User-Id": "USER:bob"}
        ).status_code == 404

    def test_reserved_property_name(self, test_client):
        response = test_client.post(
            "/api/v1/entities/Message", json={"id": "m-1", "properties": {"_owner": "x"}}
        )
        assert response.status_code == 422

    def test_anonymous_rejected_when_disabled(self, test_client, test_settings):
        from mobile_backend.src.main import app

        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(
            update={"allow_anonymous": False}
        )

        response = test_client.post("/api/v1/entities/Message", json={"id": "m-1", "properties": {}})
        assert response.status_code == 401


class TestUnsubscribeDevice:
    """Tests for DELETE /api/v1/subscriptions/devices/{device_id}."""

    def test_unsubscribe_removes_queries(self, test_client, prospective_search, device_subscriptions):
        _register_future_query(test_client)

        response = test_client.delete(f"/api/v1/subscriptions/devices/{REG_ID}")

        assert response.status_code == 204
        assert prospective_search.list_subscriptions() == []
        assert device_subscriptions.get(DEVICE_TOKEN) is None

    def test_unknown_device(self, test_client):
        assert test_client.delete("/api/v1/subscriptions/devices/nobody").status_code == 204

    def test_anonymous_rejected_when_disabled(self, test_client, test_settings, device_subscriptions):
        from mobile_backend.src.main import app

        _register_future_query(test_client)
        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(
            update={"allow_anonymous": False}
        )

        response = test_client.delete(f"/api/v1/subscriptions/devices/{REG_ID}")

        assert response.status_code == 401
        assert device_subscriptions.get(DEVICE_TOKEN) is not None

    def test_authenticated_caller_when_anonymous_disabled(self, test_client, test_settings):
        from mobile_backend.src.main import app

        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(
            update={"allow_anonymous": False}
        )

        response = test_client.delete(
            f"/api/v1/subscriptions/devices/{REG_ID}", headers={"X-User-Id": "USER:alice"}
        )
        assert response.status_code == 204
