import json
from unittest.mock import Mock

import pytest
import requests

from rental_engine.clients.external import NotificationClient, NotificationKind
from rental_engine.config.settings import Settings


@pytest.fixture
def client():
    settings = Settings(
        notification_base="http://notify.test/",
        cb_notify_fail_max=2,
        cb_notify_reset_timeout=30,
    )
    client = NotificationClient(settings)
    client._session = Mock()
    return client


def ok_response():
    response = Mock()
    response.content = b""
    response.raise_for_status.return_value = None
    return response


def test_send_posts_json(client):
    client._session.post.return_value = ok_response()

    success, error = client.send(
        NotificationKind.PAYMENT_RECEIPT, "user-1", {"rental_code": "RNT-1", "amount": 708}
    )

    assert success is True
    assert error is None
    url = client._session.post.call_args.args[0]
    body = json.loads(client._session.post.call_args.kwargs["data"])
    assert url == "http://notify.test/notifications"
    assert body == {
        "kind": "payment_receipt",
        "user_id": "user-1",
        "rental_code": "RNT-1",
        "amount": 708,
    }


def test_send_reports_failure_instead_of_raising(client):
    client._session.post.side_effect = requests.ConnectionError("connection refused")

    success, error = client.send(NotificationKind.LOST_REPORT, "user-1", {})

    assert success is False
    assert "connection refused" in error


def test_http_error_counts_as_failure(client):
    response = ok_response()
    response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
    client._session.post.return_value = response

    success, error = client.send(NotificationKind.RENTAL_EXTENDED, "user-1", {})

    assert success is False
    assert "503" in error


def test_breaker_opens_after_repeated_failures(client):
    client._session.post.side_effect = requests.ConnectionError("down")

    for _ in range(2):
        client.send(NotificationKind.RENTAL_CONFIRMATION, "user-1", {})
    calls_before = client._session.post.call_count

    success, error = client.send(NotificationKind.RENTAL_CONFIRMATION, "user-1", {})

    assert success is False
    assert error is not None
    assert client._session.post.call_count == calls_before
    assert client.get_circuit_breaker_stats()["notification_operations"]["state"] == "open"
