import pytest

from reconciler.core.exceptions import MalformedPayload
from reconciler.schemas.webhook import parse_webhook_payload
from tests.factories import (
    SCENARIO_PAYMENT_ID,
    SCENARIO_USER_ID,
    payment_entity,
    payment_event,
    subscription_event,
)


def test_parses_razorpay_envelope():
    event = parse_webhook_payload(payment_event())

    assert event.event == "payment.captured"
    assert event.payment_id == SCENARIO_PAYMENT_ID
    assert event.payment.amount == 45100
    assert event.payment.currency == "INR"
    assert event.payment.method == "upi"
    assert event.notes.user_id == SCENARIO_USER_ID
    assert event.subscription is None
    assert event.gateway_subscription_id is None


def test_parses_bare_payment_entity():
    event = parse_webhook_payload(payment_entity(status="authorized"))

    assert event.event == "payment.authorized"
    assert event.payment_id == SCENARIO_PAYMENT_ID


def test_empty_notes_list_becomes_empty_notes():
    event = parse_webhook_payload(payment_event(notes=[]))
    assert event.notes.user_id is None


def test_integer_user_id_is_coerced():
    event = parse_webhook_payload(payment_event(notes={"user_id": 44885683, "campaign": "diwali"}))
    assert event.notes.user_id == "44885683"
    assert event.payment.notes.as_dict()["campaign"] == "diwali"


def test_payment_notes_override_subscription_notes():
    payload = subscription_event(
        "subscription.charged",
        notes={"user_id": "from-subscription", "plan_type": "premium"},
        payment=payment_entity(notes={"user_id": "from-payment"}),
    )
    event = parse_webhook_payload(payload)

    assert event.notes.user_id == "from-payment"
    assert event.notes.plan_type == "premium"
    assert event.gateway_subscription_id == "sub_RzpAbc123"


def test_payment_subscription_id_is_used_without_subscription_entity():
    event = parse_webhook_payload(payment_event(subscription_id="sub_Linked42"))
    assert event.gateway_subscription_id == "sub_Linked42"


@pytest.mark.parametrize("payload", [
    [],
    "payment.captured",
    {"event": "payment.captured", "payload": {}},
    {"event": "payment.captured", "payload": {"payment": {"entity": {"amount": 100}}}},
    payment_event(amount=-5),
    payment_event(notes={"user_id": ["nested"]}),
])
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(MalformedPayload):
        parse_webhook_payload(payload)
