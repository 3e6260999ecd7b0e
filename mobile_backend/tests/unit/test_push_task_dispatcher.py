"""
Unit tests for PushTaskDispatcher.

Handlers are replaced with httpx.MockTransport.
"""

import threading
from urllib.parse import parse_qs

import httpx
import pytest

from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.push_task_dispatcher import (
    QUEUE_NAME_HEADER,
    QUEUE_SECRET_HEADER,
    TASK_NAME_HEADER,
    PushTaskDispatcher,
)


class FakeHandlers:
    """Records POSTs and answers with a fixed status code."""

    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []
        self.error = None

    def __call__(self, request):
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        return httpx.Response(self.status_code)


@pytest.fixture
def handlers():
    return FakeHandlers()


@pytest.fixture
def dispatcher(test_session_factory, test_settings, handlers):
    client = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(handlers))
    return PushTaskDispatcher(test_session_factory, client, test_settings)


class TestDispatchOnce:
    """Tests for PushTaskDispatcher.dispatch_once."""

    def test_posts_params_and_deletes_task(self, dispatcher, handlers, task_queue):
        task = task_queue.add_push(
            QueueName.DEVICE_TOKEN_CLEANUP, "/admin/push/device/cleanup", {"devices": '["abc"]'}
        )
        task_name = task.name

        assert dispatcher.dispatch_once() == 1

        [request] = handlers.requests
        assert request.url.path == "/admin/push/device/cleanup"
        assert request.headers[QUEUE_NAME_HEADER] == QueueName.DEVICE_TOKEN_CLEANUP
        assert request.headers[QUEUE_SECRET_HEADER] == "test-queue-secret"
        assert request.headers[TASK_NAME_HEADER] == task_name
        assert parse_qs(request.content.decode()) == {"devices": ['["abc"]']}
        assert task_queue.count() == 0

    def test_list_params_repeat(self, dispatcher, handlers, task_queue):
        task_queue.add_push(
            QueueName.PROSPECTIVE_SEARCH, "/admin/push/prospective-search",
            {"id": ["a:query:q1", "b:query:q1"]},
        )

        dispatcher.dispatch_once()

        assert parse_qs(handlers.requests[0].content.decode()) == {"id": ["a:query:q1", "b:query:q1"]}

    def test_rejected_task_stays_leased(self, dispatcher, handlers, task_queue):
        handlers.status_code = 500
        task_queue.add_push(QueueName.SUBSCRIPTION_REMOVAL, "/admin/push/devicesubscription/delete", {})

        assert dispatcher.dispatch_once() == 0
        assert task_queue.count(QueueName.SUBSCRIPTION_REMOVAL) == 1

        # still leased: not redelivered straight away
        assert dispatcher.dispatch_once() == 0
        assert len(handlers.requests) == 1

    def test_unreachable_handler_keeps_task(self, dispatcher, handlers, task_queue):
        handlers.error = httpx.ConnectError("refused")
        task_queue.add_push(QueueName.DEVICE_TOKEN_CLEANUP, "/admin/push/device/cleanup", {})

        assert dispatcher.dispatch_once() == 0
        assert task_queue.count(QueueName.DEVICE_TOKEN_CLEANUP) == 1

    def test_pull_tasks_are_left_alone(self, dispatcher, handlers, task_queue):
        task_queue.add_pull(QueueName.NOTIFICATION_DELIVERY, {"alert": "x", "devices": "[]"})

        assert dispatcher.dispatch_once() == 0
        assert handlers.requests == []
        assert task_queue.count(QueueName.NOTIFICATION_DELIVERY) == 1

    def test_only_configured_queues(self, test_session_factory, test_settings, handlers, task_queue):
        client = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(handlers))
        dispatcher = PushTaskDispatcher(
            test_session_factory, client, test_settings, queues=[QueueName.PROSPECTIVE_SEARCH]
        )
        task_queue.add_push(QueueName.DEVICE_TOKEN_CLEANUP, "/admin/push/device/cleanup", {})

        assert dispatcher.dispatch_once() == 0


class TestLifecycle:
    """Tests for run/stop."""

    def test_run_returns_once_shut_down(self, dispatcher, handlers, task_queue):
        task_queue.add_push(QueueName.DEVICE_TOKEN_CLEANUP, "/admin/push/device/cleanup", {})
        dispatcher.shutdown_event.set()

        dispatcher.run()

        assert handlers.requests == []

    def test_start_and_stop(self, test_session_factory, test_settings, handlers):
        client = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(handlers))
        dispatcher = PushTaskDispatcher(
            test_session_factory, client, test_settings, shutdown_event=threading.Event(), queues=[]
        )

        dispatcher.start()
        dispatcher.stop(timeout=5)

        assert not dispatcher._thread.is_alive()
