import asyncio

from fastapi.testclient import TestClient

from enrollment.api.deps import get_components
from enrollment.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth
from enrollment.main import app


def test_checkout_view_is_masked(components, store) -> None:
    subscription = store.add_subscription()
    issued = asyncio.run(components.checkout_links.issue(subscription["id"]))
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = client.get(f"/subscription-checkout/{issued.token}")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["subscriptionId"] == subscription["id"]
    assert body["customerDocument"] == "***.***.***-**"
    assert body["customerEmail"] == "m***@example.com"


def test_checkout_unknown_token_returns_404(components) -> None:
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        response = client.get("/subscription-checkout/does-not-exist")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "Checkout link not found. Check the address or ask for a new payment link.",
        "code": "checkout_link_not_found",
    }


def test_checkout_expired_and_used_return_410(components, store, clock) -> None:
    subscription = store.add_subscription()
    expired = asyncio.run(components.checkout_links.issue(subscription["id"]))
    clock.advance(hours=25)
    used = asyncio.run(components.checkout_links.issue(subscription["id"]))
    store.checkout_links[used.token]["is_used"] = True
    app.dependency_overrides[get_components] = lambda: components

    try:
        client = TestClient(app)
        expired_response = client.get(f"/subscription-checkout/{expired.token}")
        used_response = client.get(f"/subscription-checkout/{used.token}")
    finally:
        app.dependency_overrides.clear()

    assert expired_response.status_code == 410
    assert expired_response.json()["code"] == "checkout_link_expired"
    assert used_response.status_code == 410
    assert used_response.json()["code"] == "checkout_link_used"


def test_issue_checkout_link_requires_auth() -> None:
    client = TestClient(app)
    response = client.post("/api/v1/subscriptions/sub-1/checkout-links")
    assert response.status_code == 401


def test_issue_checkout_link(components, store) -> None:
    subscription = store.add_subscription()
    app.dependency_overrides[get_components] = lambda: components
    app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
        access_token="token-123",
        claims={"sub": "user-1"},
    )

    try:
        client = TestClient(app)
        response = client.post(f"/api/v1/subscriptions/{subscription['id']}/checkout-links")
        missing = client.post("/api/v1/subscriptions/missing/checkout-links")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 201
    body = response.json()
    assert body["url"].endswith(f"/subscription-checkout/{body['token']}")
    assert body["token"] in store.checkout_links
    assert missing.status_code == 404
    assert missing.json()["code"] == "subscription_not_found"
