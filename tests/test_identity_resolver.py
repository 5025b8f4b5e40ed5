import asyncio

import pytest

from reconciler.core.exceptions import UnresolvedIdentity
from reconciler.db.memory_store import InMemoryStore
from reconciler.models.payment import Payment, ResolutionMethod
from reconciler.models.subscription import Subscription
from reconciler.models.user import User
from reconciler.schemas.webhook import parse_webhook_payload
from reconciler.services.identity_resolver import IdentityResolver
from tests.factories import SCENARIO_USER_ID, default_users, payment_event


def make_resolver(store=None):
    store = store or InMemoryStore(default_users())
    return IdentityResolver(
        store,
        default_country_code="91",
        generic_email_addresses=["void@razorpay.com", "void@gateway.com"],
        generic_email_domains=["example.com"],
    )


def resolve(payload, store=None, payment=None):
    resolver = make_resolver(store)
    return asyncio.run(resolver.resolve(parse_webhook_payload(payload), payment))


def test_notes_user_id_wins_over_conflicting_email():
    resolution = resolve(payment_event(email="second.officer@qaaq.app"))

    assert resolution.user_id == SCENARIO_USER_ID
    assert resolution.method == ResolutionMethod.NOTES_USER_ID


def test_unknown_notes_user_id_falls_through_to_email():
    resolution = resolve(payment_event(notes={"user_id": "no-such-user"}, email=" Second.Officer@qaaq.app "))

    assert resolution.user_id == "user-email"
    assert resolution.method == ResolutionMethod.EMAIL


def test_generic_email_is_skipped_for_contact():
    # void@gateway.com must not be matched even if a user registered with it
    store = InMemoryStore(default_users())
    store.add_user(User(id="user-void", email="void@gateway.com"))

    resolution = resolve(payment_event(notes={}, email="void@gateway.com"), store=store)

    assert resolution.user_id == "user-contact"
    assert resolution.method == ResolutionMethod.CONTACT


def test_contact_matches_bare_national_phone():
    resolution = resolve(payment_event(notes={}, email=None, contact="+91-98765-43210"))

    assert resolution.user_id == "user-phone"
    assert resolution.method == ResolutionMethod.CONTACT


def test_email_is_tried_before_contact():
    resolution = resolve(payment_event(notes={}, email="second.officer@qaaq.app", contact="+918973297600"))

    assert resolution.user_id == "user-email"


def test_known_gateway_subscription_owner():
    store = InMemoryStore(default_users())
    store.subscriptions["sub_internal"] = Subscription(
        id="sub_internal", user_id="user-phone", plan_type="premium",
        gateway_subscription_id="sub_RzpKnown",
    )

    resolution = resolve(
        payment_event(notes={}, email=None, contact=None, subscription_id="sub_RzpKnown"),
        store=store,
    )

    assert resolution.user_id == "user-phone"
    assert resolution.method == ResolutionMethod.SUBSCRIPTION_OWNER


def test_already_resolved_payment_keeps_owner():
    payment = Payment(
        payment_id="pay_R6yeWtx4jUG6dS",
        resolved_user_id="user-phone",
        resolution_method=ResolutionMethod.MANUAL,
    )

    resolution = resolve(payment_event(), payment=payment)

    assert resolution.user_id == "user-phone"
    assert resolution.method == ResolutionMethod.MANUAL


def test_ambiguous_email_is_not_used():
    store = InMemoryStore([
        User(id="a", email="shared@qaaq.app"),
        User(id="b", email="SHARED@qaaq.app"),
    ])

    with pytest.raises(UnresolvedIdentity):
        resolve(payment_event(notes={}, email="shared@qaaq.app", contact=None), store=store)


def test_nothing_matches():
    with pytest.raises(UnresolvedIdentity) as exc_info:
        resolve(payment_event(notes={}, email="void@gateway.com", contact="+91 70000 00000"))

    assert exc_info.value.details["payment_id"] == "pay_R6yeWtx4jUG6dS"


def test_real_address_with_common_local_part_is_matched():
    store = InMemoryStore([User(id="user-test", email="test@shipco.in")])

    resolution = resolve(payment_event(notes={}, email="test@shipco.in", contact=None), store=store)

    assert resolution.user_id == "user-test"
    assert resolution.method == ResolutionMethod.EMAIL
