import json

import httpx
import pytest

from job_manager.exceptions import PermanentExecutionError, TransientExecutionError
from worker.notifier import Notification, Notifier, build_payload

API_URL = "https://mail.test/v3/mail/send"


def make_notifier(handler) -> Notifier:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return Notifier(API_URL, "key-123", "team@example.com", client=client)


def test_send_posts_one_request_and_returns_message_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, headers={"X-Message-Id": "msg-1"})

    res = make_notifier(handler).send("user@example.com", "Welcome", "<p>hi</p>")

    assert res.status_code == 202
    assert res.message_id == "msg-1"
    assert len(seen) == 1
    req = seen[0]
    assert str(req.url) == API_URL
    assert req.headers["Authorization"] == "Bearer key-123"
    body = json.loads(req.content)
    assert body["personalizations"] == [{"to": [{"email": "user@example.com"}]}]
    assert body["from"] == {"email": "team@example.com"}
    assert body["subject"] == "Welcome"
    assert body["content"] == [{"type": "text/html", "value": "<p>hi</p>"}]


def test_message_id_from_json_body():
    notifier = make_notifier(lambda request: httpx.Response(200, json={"id": "abc"}))
    assert notifier.send("user@example.com", "s", "b", "text/plain").message_id == "abc"


@pytest.mark.parametrize("status", [400, 401, 403, 422])
def test_rejected_requests_are_permanent(status):
    notifier = make_notifier(lambda request: httpx.Response(status, json={"errors": ["nope"]}))
    with pytest.raises(PermanentExecutionError):
        notifier.send("user@example.com", "s", "b")


@pytest.mark.parametrize("status", [429, 500, 503])
def test_throttling_and_server_errors_are_transient(status):
    notifier = make_notifier(lambda request: httpx.Response(status))
    with pytest.raises(TransientExecutionError):
        notifier.send("user@example.com", "s", "b")


def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(TransientExecutionError):
        make_notifier(handler).send("user@example.com", "s", "b")


def test_invalid_recipient_fails_without_a_request():
    def handler(request):
        raise AssertionError("no request expected")

    notifier = make_notifier(handler)
    with pytest.raises(PermanentExecutionError):
        notifier.send("not-an-address", "s", "b")
    with pytest.raises(PermanentExecutionError):
        notifier.send("user@example.com", "s", "b", content_type="application/pdf")


def test_build_payload_plain_text():
    payload = build_payload(Notification("a@example.com", "s", "body", "text/plain"), "from@example.com")
    assert payload["content"] == [{"type": "text/plain", "value": "body"}]
