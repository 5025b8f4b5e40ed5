import json

import pytest
from fastapi.testclient import TestClient

from reconciler.api.deps import get_reconciliation_service, get_webhook_secret
from reconciler.api.webhook import compute_signature
from reconciler.core.config import settings
from reconciler.main import app
from tests.factories import (
    SCENARIO_PAYMENT_ID,
    SCENARIO_USER_ID,
    build_service,
    payment_event,
)

SECRET = "whsec_test_secret"
WEBHOOK_URL = f"{settings.API_PREFIX}/razorpay/webhook"

client = TestClient(app)


@pytest.fixture
def service():
    service = build_service()
    app.dependency_overrides[get_reconciliation_service] = lambda: service
    app.dependency_overrides[get_webhook_secret] = lambda: SECRET
    yield service
    app.dependency_overrides.clear()


def post_webhook(payload, secret=SECRET, signature=None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    if secret is not None:
        headers["X-Razorpay-Signature"] = signature or compute_signature(body, secret)
    return client.post(WEBHOOK_URL, content=body, headers=headers)


# ==============================================
# WEBHOOK
# ==============================================

def test_missing_signature_is_rejected(service):
    response = post_webhook(payment_event(), secret=None)

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert service.store.payments == {}


def test_wrong_signature_is_rejected(service):
    response = post_webhook(payment_event(), signature="0" * 64)

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert service.store.payments == {}


def test_unconfigured_secret_rejects_everything(service):
    app.dependency_overrides[get_webhook_secret] = lambda: None

    response = post_webhook(payment_event())

    assert response.status_code == 401


def test_signed_capture_is_processed(service):
    response = post_webhook(payment_event())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processed"
    assert body["payment_id"] == SCENARIO_PAYMENT_ID
    assert body["user_id"] == SCENARIO_USER_ID

    again = post_webhook(payment_event())
    assert again.status_code == 200
    assert again.json()["status"] == "duplicate"


def test_malformed_body_is_quarantined(service):
    response = post_webhook(b"{not json")

    assert response.status_code == 200
    assert response.json()["status"] == "quarantined"
    assert len(service.store.quarantined) == 1
    assert service.store.quarantined[0]["raw_body"] == "{not json"


def test_unparseable_event_is_quarantined(service):
    response = post_webhook({"event": "payment.captured", "payload": {}})

    assert response.json()["status"] == "quarantined"
    assert service.store.payments == {}


# ==============================================
# STATUS + HISTORY
# ==============================================

def test_status_after_capture(service):
    post_webhook(payment_event())

    response = client.get(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscription-status")

    assert response.status_code == 200
    body = response.json()
    assert body["is_premium"] is True
    assert body["is_super_user"] is False
    assert body["premium_expires_at"].startswith("2025-10-01T10:00:00")


def test_status_with_verify(service):
    response = client.get(
        f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscription-status",
        params={"verify": "true"},
    )

    assert response.status_code == 200
    assert response.json()["is_premium"] is False


def test_unknown_user_is_404(service):
    response = client.get(f"{settings.API_PREFIX}/users/ghost/subscription-status")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_payment_and_subscription_history(service):
    post_webhook(payment_event())

    payments = client.get(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/payments").json()
    subscriptions = client.get(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscriptions").json()

    assert [p["payment_id"] for p in payments] == [SCENARIO_PAYMENT_ID]
    assert subscriptions[0]["plan_type"] == "premium"
    assert subscriptions[0]["status"] == "active"


def test_plan_catalog():
    response = client.get(f"{settings.API_PREFIX}/plans")

    assert response.status_code == 200
    amounts = {(p["plan_type"], p["variant"]): p["amount"] for p in response.json()["plans"]}
    assert amounts[("premium", "yearly")] == 261100
    questions = {p["variant"]: p["questions"] for p in response.json()["plans"]}
    assert questions["topup_4510"] == 1000
    assert questions["monthly"] == 0


# ==============================================
# MANUAL RECONCILIATION
# ==============================================

def test_unresolved_payment_can_be_resolved(service):
    post_webhook(payment_event(notes={}, email="void@gateway.com", contact="+91 70000 00000"))

    listing = client.get(f"{settings.API_PREFIX}/admin/payments/unresolved").json()
    assert listing["count"] == 1
    assert listing["payments"][0]["payment_id"] == SCENARIO_PAYMENT_ID

    response = client.post(
        f"{settings.API_PREFIX}/admin/payments/{SCENARIO_PAYMENT_ID}/resolve",
        json={"user_id": "user-phone", "operator": "ops@qaaq.app"},
    )
    assert response.status_code == 200
    assert response.json()["resolved_user_id"] == "user-phone"
    assert response.json()["resolution_method"] == "manual"

    status = client.get(f"{settings.API_PREFIX}/users/user-phone/subscription-status").json()
    assert status["is_premium"] is True


def test_resolving_someone_elses_payment_conflicts(service):
    post_webhook(payment_event())

    response = client.post(
        f"{settings.API_PREFIX}/admin/payments/{SCENARIO_PAYMENT_ID}/resolve",
        json={"user_id": "user-phone"},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"


def test_admin_key_is_enforced_when_configured(service, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "admin-secret")
    url = f"{settings.API_PREFIX}/admin/payments/unresolved"

    assert client.get(url).status_code == 401
    assert client.get(url, headers={"X-Admin-Key": "wrong"}).status_code == 401
    assert client.get(url, headers={"X-Admin-Key": "admin-secret"}).status_code == 200


# ==============================================
# ACCOUNT ACTIONS
# ==============================================

def test_question_credits_are_spent(service):
    post_webhook(payment_event(
        payment_id="pay_SuperPack01",
        notes={"user_id": SCENARIO_USER_ID, "plan_type": "super_user", "plan_variant": "topup_451"},
    ))
    status_url = f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscription-status"
    assert client.get(status_url).json()["questions_remaining"] == 100

    response = client.post(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/questions/consume")

    assert response.status_code == 200
    assert response.json()["questions_remaining"] == 99
    assert client.get(status_url).json()["questions_remaining"] == 99


def test_no_question_credits_is_402(service):
    response = client.post(f"{settings.API_PREFIX}/users/user-phone/questions/consume")

    assert response.status_code == 402
    assert response.json()["code"] == "NO_QUESTION_CREDITS"


def test_cancel_subscription(service):
    post_webhook(payment_event())
    subscription_id = client.get(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscriptions").json()[0]["id"]

    response = client.post(
        f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscriptions/{subscription_id}/cancel"
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    status = client.get(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscription-status").json()
    assert status["is_premium"] is True


def test_cancel_someone_elses_subscription_is_404(service):
    post_webhook(payment_event())
    subscription_id = client.get(f"{settings.API_PREFIX}/users/{SCENARIO_USER_ID}/subscriptions").json()[0]["id"]

    response = client.post(f"{settings.API_PREFIX}/users/user-phone/subscriptions/{subscription_id}/cancel")

    assert response.status_code == 404


# ==============================================
# HEALTH CHECKS
# ==============================================

def test_liveness_check():
    response = client.get("/live")

    assert response.status_code == 200
