import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from wa_sender import main
from wa_sender.errors import TransportError
from wa_sender.services.credential_store import FileCredentialStore
from wa_sender.services.session_controller import SessionController

from conftest import FakeTransport, make_settings


def _eventually(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def api(monkeypatch, tmp_path):
    monkeypatch.setattr(main.settings, "LOG_DIR", "")
    transport = FakeTransport()
    store = FileCredentialStore(str(tmp_path / "auth"), "default")
    controller = SessionController(make_settings(), lambda: transport, store)
    main.app.state.controller = controller
    with TestClient(main.app) as client:
        yield SimpleNamespace(client=client, transport=transport, store=store, controller=controller)
    main.app.state.controller = None


def _start_form(**overrides):
    form = {
        "userPhone": "15550000000",
        "targetType": "individual",
        "targetPhones": "111, 222",
        "messageInputType": "text",
        "messageText": "Hello there",
        "messageDelay": "0",
        "enableRetry": "true",
        "maxRetries": "2",
    }
    form.update(overrides)
    return form


def test_status_starts_disconnected(api):
    response = api.client.get("/api/status")

    assert response.status_code == 200
    assert response.json() == {"state": "disconnected", "pairingCode": None, "qrCode": None}


def test_pairing_requires_phone_number(api):
    response = api.client.post("/api/pairing", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "Phone number is required"


def test_pairing_rejects_malformed_number(api):
    response = api.client.post("/api/pairing", json={"phoneNumber": "12-34"})

    assert response.status_code == 400
    assert "10-15 digits" in response.json()["error"]
    assert api.transport.pairing_requests == []


def test_pairing_before_start_is_invalid_state(api):
    response = api.client.post("/api/pairing", json={"phoneNumber": "+1 555 123 4567"})

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "Connection not in connecting state"
    assert body["details"]


def test_start_queues_and_delivers(api):
    response = api.client.post("/api/start", data=_start_form())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["queued"] == 2

    assert _eventually(lambda: len(api.transport.sent) == 2)
    assert api.transport.sent == [
        ("111@s.whatsapp.net", "Hello there"),
        ("222@s.whatsapp.net", "Hello there"),
    ]
    assert api.client.get("/api/status").json()["state"] == "active"
    assert _eventually(lambda: api.client.get("/api/queue").json()["delivered"] == 2)


def test_start_reads_message_file(api):
    response = api.client.post(
        "/api/start",
        data=_start_form(messageInputType="file", messageText="", targetPhones="333"),
        files={"messageFile": ("message.txt", "Line one\nLine two".encode("utf-8"), "text/plain")},
    )

    assert response.status_code == 200
    assert _eventually(lambda: len(api.transport.sent) == 1)
    assert api.transport.sent[0] == ("333@s.whatsapp.net", "Line one\nLine two")


def test_start_imports_credentials_file(api):
    response = api.client.post(
        "/api/start",
        data=_start_form(),
        files={"credsFile": ("creds.json", b'{"me": {"id": "1555"}}', "application/json")},
    )

    assert response.status_code == 200
    assert api.store.load().blob == b'{"me": {"id": "1555"}}'


def test_start_group_targets(api):
    response = api.client.post(
        "/api/start", data=_start_form(targetType="group", targetPhones="120363025246125486")
    )

    assert response.status_code == 200
    assert _eventually(lambda: len(api.transport.sent) == 1)
    assert api.transport.sent[0][0] == "120363025246125486@g.us"


@pytest.mark.parametrize(
    "overrides",
    [
        {"targetPhones": " , "},
        {"targetPhones": ""},
        {"messageText": ""},
        {"targetType": "broadcast"},
        {"messageInputType": "file"},
    ],
)
def test_start_rejects_invalid_forms(api, overrides):
    response = api.client.post("/api/start", data=_start_form(**overrides))

    assert response.status_code == 400
    assert "error" in response.json()
    assert api.transport.connect_calls == 0


def test_start_defaults_zero_max_retries(api):
    api.transport.open_on_connect = False

    response = api.client.post("/api/start", data=_start_form(maxRetries="0", messageDelay="abc"))

    assert response.status_code == 200
    pending = api.controller.session.queue.pending()
    assert [m.max_retries for m in pending] == [3, 3]
    assert [m.delay_after_seconds for m in pending] == [0, 0]
    assert all(m.retry_enabled for m in pending)


def test_start_then_pair(api):
    api.transport.open_on_connect = False

    assert api.client.post("/api/start", data=_start_form()).status_code == 200
    assert api.client.get("/api/status").json()["state"] == "connecting"

    response = api.client.post("/api/pairing", json={"phoneNumber": "+1 (555) 123-4567"})

    assert response.status_code == 200
    assert response.json() == {"pairingCode": "ABCD-1234"}
    status = api.client.get("/api/status").json()
    assert status["state"] == "pairing"
    assert status["pairingCode"] == "ABCD-1234"
    assert api.transport.pairing_requests == ["15551234567"]


def test_start_connect_failure_is_bad_gateway(api):
    api.transport.connect_errors = [TransportError("bridge unreachable")]

    response = api.client.post("/api/start", data=_start_form())

    assert response.status_code == 502
    assert response.json()["error"] == "bridge unreachable"
    assert api.client.get("/api/status").json()["state"] == "errored"


def test_stop_disconnects_and_clears(api):
    api.transport.open_on_connect = False
    api.client.post("/api/start", data=_start_form())

    response = api.client.post("/api/stop")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert api.client.get("/api/status").json()["state"] == "disconnected"
    assert api.client.get("/api/queue").json()["pending"] == 0

    # Stopping again is harmless
    assert api.client.post("/api/stop").status_code == 200


def test_health_endpoints(api):
    assert api.client.get("/health/").json()["status"] == "ok"
    assert api.client.get("/health/live").json()["status"] == "alive"
    ready = api.client.get("/health/ready").json()
    assert ready["status"] == "ready"
    assert ready["session"] == "disconnected"


def test_start_rejects_non_utf8_message_file(api):
    response = api.client.post(
        "/api/start",
        data=_start_form(messageInputType="file", messageText=""),
        files={"messageFile": ("message.txt", b"\xff\xfe\xfa", "text/plain")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Message file must be UTF-8 text"
    assert api.transport.connect_calls == 0
