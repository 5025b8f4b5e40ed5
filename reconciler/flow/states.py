"""
reconciler/flow/states.py

Purpose: Status lattices for payments and subscriptions

- Single source of truth for which status changes are legal
- Terminal-state sets used by the idempotency guard and projector
- Metadata for each subscription status (entitlement, terminality)
"""

from dataclasses import dataclass
from typing import Dict, List

from reconciler.models.payment import PaymentStatus
from reconciler.models.subscription import SubscriptionStatus


# ==============================================
# PAYMENTS
# ==============================================

TERMINAL_PAYMENT_STATUSES = {
    PaymentStatus.CAPTURED,
    PaymentStatus.REFUNDED,
    PaymentStatus.FAILED,
}

# Forward-only: nothing ever moves back toward CREATED
PAYMENT_TRANSITIONS: Dict[PaymentStatus, List[PaymentStatus]] = {
    PaymentStatus.CREATED: [
        PaymentStatus.AUTHORIZED,
        PaymentStatus.CAPTURED,
        PaymentStatus.REFUNDED,
        PaymentStatus.FAILED,
    ],
    PaymentStatus.AUTHORIZED: [
        PaymentStatus.CAPTURED,
        PaymentStatus.REFUNDED,
        PaymentStatus.FAILED,
    ],
    PaymentStatus.CAPTURED: [
        PaymentStatus.REFUNDED,  # Refund of a captured payment
    ],
    PaymentStatus.REFUNDED: [],
    PaymentStatus.FAILED: [],
}


def is_valid_payment_transition(from_status: str, to_status: str) -> bool:
    """
    Checks if a payment status change is allowed.
    Re-applying the current status is a no-op, not a transition.
    """
    allowed = PAYMENT_TRANSITIONS.get(PaymentStatus(from_status), [])
    return PaymentStatus(to_status) in allowed


def is_terminal_payment(status: str) -> bool:
    return PaymentStatus(status) in TERMINAL_PAYMENT_STATUSES


# ==============================================
# SUBSCRIPTIONS
# ==============================================

@dataclass
class SubscriptionStateMetadata:
    """
    Metadata associated with each subscription status.
    """
    name: SubscriptionStatus
    entitles: bool  # Grants the plan's benefits while in this status
    terminal: bool
    description: str = ""


SUBSCRIPTION_STATE_METADATA: Dict[SubscriptionStatus, SubscriptionStateMetadata] = {
    SubscriptionStatus.CREATED: SubscriptionStateMetadata(
        name=SubscriptionStatus.CREATED,
        entitles=False,
        terminal=False,
        description="Created at the gateway, no successful charge yet"
    ),
    SubscriptionStatus.ACTIVE: SubscriptionStateMetadata(
        name=SubscriptionStatus.ACTIVE,
        entitles=True,
        terminal=False,
        description="Paid up for the current period"
    ),
    SubscriptionStatus.HALTED: SubscriptionStateMetadata(
        name=SubscriptionStatus.HALTED,
        entitles=True,
        terminal=False,
        description="Renewal charge failed, gateway is retrying"
    ),
    SubscriptionStatus.CANCELLED: SubscriptionStateMetadata(
        name=SubscriptionStatus.CANCELLED,
        entitles=False,
        terminal=True,
        description="Cancelled by the user, operator or a refund"
    ),
    SubscriptionStatus.COMPLETED: SubscriptionStateMetadata(
        name=SubscriptionStatus.COMPLETED,
        entitles=False,
        terminal=True,
        description="All billing cycles of a fixed-term plan paid"
    ),
    SubscriptionStatus.EXPIRED: SubscriptionStateMetadata(
        name=SubscriptionStatus.EXPIRED,
        entitles=False,
        terminal=True,
        description="Period ended with no further billing event"
    ),
}

SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, List[SubscriptionStatus]] = {
    SubscriptionStatus.CREATED: [
        SubscriptionStatus.ACTIVE,  # First successful capture
    ],
    SubscriptionStatus.ACTIVE: [
        SubscriptionStatus.HALTED,  # Failed renewal
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.COMPLETED,  # paid_count == total_count
        SubscriptionStatus.EXPIRED,  # Lazily, period end passed
    ],
    SubscriptionStatus.HALTED: [
        SubscriptionStatus.ACTIVE,  # Retry succeeded
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    ],
    SubscriptionStatus.CANCELLED: [],
    SubscriptionStatus.COMPLETED: [],
    SubscriptionStatus.EXPIRED: [],
}

ENTITLING_SUBSCRIPTION_STATUSES = {
    status for status, meta in SUBSCRIPTION_STATE_METADATA.items() if meta.entitles
}


def is_valid_subscription_transition(from_status: str, to_status: str) -> bool:
    """
    Checks if a subscription status change is allowed.

    Args:
        from_status: Current status
        to_status: Target status

    Returns:
        True if transition is allowed, False otherwise
    """
    allowed = SUBSCRIPTION_TRANSITIONS.get(SubscriptionStatus(from_status), [])
    return SubscriptionStatus(to_status) in allowed


def is_terminal_subscription(status: str) -> bool:
    return SUBSCRIPTION_STATE_METADATA[SubscriptionStatus(status)].terminal
