import json

from fastapi.testclient import TestClient
from support import WEBHOOK_SECRET, FakeClock, FakeStore, SleepRecorder, make_settings, registry_success

from enrollment.api.deps import get_components
from enrollment.core.components import build_components
from enrollment.main import app
from enrollment.webhooks.signature import compute_signature

PAID_EVENT = {
    "id": "evt_1",
    "type": "bill_paid",
    "data": {"bill": {"id": 1, "amount": 49.9, "subscription": {"id": "S1"}}},
}


def _post(client: TestClient, payload: object, *, secret: str | None = WEBHOOK_SECRET, signature: str | None = None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["X-Signature"] = signature
    elif secret is not None:
        headers["X-Signature"] = f"sha256={compute_signature(body, secret)}"
    return client.post("/webhooks/payment", content=body, headers=headers)


def _seed(store: FakeStore) -> dict:
    subscription = store.add_subscription()
    store.add_plan()
    return store.add_pending(subscription_id=subscription["id"])


def test_paid_webhook_confirms_enrollment(components, store, registry_http) -> None:
    _seed(store)
    registry_http.queue(registry_success())
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = _post(client, PAID_EVENT)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["eventId"] == "evt_1"
    assert body["eventType"] == "bill_paid"
    assert body["result"]["action"] == "registry_confirmed"
    assert response.headers["X-Request-ID"]


def test_duplicate_delivery_returns_identical_result(components, store, registry_http) -> None:
    _seed(store)
    registry_http.queue(registry_success())
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        first = _post(client, PAID_EVENT)
        second = _post(client, PAID_EVENT)
    finally:
        app.dependency_overrides.clear()

    assert first.status_code == second.status_code == 200
    assert first.json()["result"] == second.json()["result"]
    assert second.json()["duplicate"] is True
    assert len(registry_http.calls) == 1
    assert len(store.beneficiaries) == 1


def test_bad_signature_is_rejected_and_not_stored(components, store) -> None:
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        wrong = _post(client, PAID_EVENT, secret="not-the-secret")
        missing = _post(client, PAID_EVENT, secret=None)
    finally:
        app.dependency_overrides.clear()

    assert wrong.status_code == 401
    assert missing.status_code == 401
    assert wrong.json()["success"] is False
    assert wrong.json()["code"] == "invalid_signature"
    assert store.webhook_events == {}


def test_malformed_body_is_acknowledged_without_storing(components, store) -> None:
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = _post(client, b"[1, 2, 3]")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "malformed_event"
    assert body["error"]
    assert store.webhook_events == {}


def test_handler_failure_returns_500_and_keeps_event_unprocessed(components, store) -> None:
    _seed(store)
    store.fail_on.add("transition_pending_enrollment")
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = _post(client, PAID_EVENT)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["eventId"] == "evt_1"
    assert body["error"]
    assert store.webhook_events["evt_1"]["processed"] is False


def test_datastore_outage_returns_500(components, store) -> None:
    store.fail_on.add("select_webhook_event")
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = _post(client, PAID_EVENT)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json()["eventType"] == "bill_paid"


def test_missing_secret_accepts_unverified_callbacks(store) -> None:
    components = build_components(
        make_settings(PAYMENT_WEBHOOK_SECRET=None),
        store,  # type: ignore[arg-type]
        sleep=SleepRecorder(),
        clock=FakeClock(),
    )
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = _post(client, {"id": "evt_x", "type": "customer_created", "data": {}}, secret=None)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["result"]["action"] == "ignored"
