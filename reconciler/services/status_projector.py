"""
reconciler/services/status_projector.py

Purpose: Derive the per-user status row from the ledger

- Only writer of user_subscription_status
- Pure function of payments + subscriptions (question credits included) (+ legacy grants with no subscription)
- Idempotent: projecting twice in a row writes the same values
"""

from datetime import datetime
from typing import List, Optional, Tuple

from reconciler.core.logging import get_logger
from reconciler.db.store import Store
from reconciler.flow.states import ENTITLING_SUBSCRIPTION_STATUSES, is_terminal_subscription
from reconciler.models.payment import PaymentStatus
from reconciler.models.subscription import PlanType, Subscription, UserSubscriptionStatus
from utils.time_utils import is_future

logger = get_logger(__name__)

_ENTITLING = {status.value for status in ENTITLING_SUBSCRIPTION_STATUSES}


def current_subscription(subscriptions: List[Subscription], plan_type: PlanType) -> Optional[Subscription]:
    """
    The subscription that speaks for a plan: the newest active/halted one,
    else the newest other non-terminal one, else the newest terminal one.
    """
    rows = [s for s in subscriptions if s.plan_type == plan_type.value]
    if not rows:
        return None

    def newest(candidates):
        return max(candidates, key=lambda s: s.created_at) if candidates else None

    return (
        newest([s for s in rows if s.status in _ENTITLING])
        or newest([s for s in rows if not is_terminal_subscription(s.status)])
        or newest(rows)
    )


def is_live(subscription: Subscription, now: datetime) -> bool:
    """Active/halted, or a paid-up period that has not ended yet."""
    return subscription.status in _ENTITLING or is_future(subscription.current_period_end, now)


def questions_left(subscription: Subscription) -> int:
    return max(subscription.questions_granted - subscription.questions_used, 0)


def _entitlement(
    subscription: Optional[Subscription],
    legacy_flag: bool,
    legacy_expiry: Optional[datetime],
    now: datetime
) -> Tuple[bool, Optional[datetime]]:
    if subscription is None:
        # Direct grant made before this ledger existed
        if legacy_expiry is None:
            return legacy_flag, None
        return legacy_flag and is_future(legacy_expiry, now), legacy_expiry

    return is_live(subscription, now), subscription.current_period_end


class StatusProjector:

    def __init__(self, store: Store):
        self.store = store

    async def compute(self, user_id: str, now: datetime) -> UserSubscriptionStatus:
        """Builds the status row without writing it."""
        subscriptions = await self.store.list_subscriptions_for_user(user_id)
        payments = await self.store.list_payments_for_user(user_id)
        previous = await self.store.get_status(user_id)

        premium = current_subscription(subscriptions, PlanType.PREMIUM)
        super_user = current_subscription(subscriptions, PlanType.SUPER_USER)

        is_premium, premium_expires_at = _entitlement(
            premium,
            previous.is_premium if previous else False,
            previous.premium_expires_at if previous else None,
            now,
        )
        is_super_user, super_user_expires_at = _entitlement(
            super_user,
            previous.is_super_user if previous else False,
            previous.super_user_expires_at if previous else None,
            now,
        )

        total_spent = sum(p.amount for p in payments if p.status == PaymentStatus.CAPTURED.value)

        if super_user is None:
            # Legacy grant: credits travel with the flag
            questions_remaining = previous.questions_remaining if previous and is_super_user else 0
        else:
            questions_remaining = sum(
                questions_left(s) for s in subscriptions
                if s.plan_type == PlanType.SUPER_USER.value and is_live(s, now)
            )

        return UserSubscriptionStatus(
            user_id=user_id,
            is_premium=is_premium,
            is_super_user=is_super_user,
            premium_expires_at=premium_expires_at,
            super_user_expires_at=super_user_expires_at,
            current_premium_subscription_id=premium.id if premium else None,
            current_super_user_subscription_id=super_user.id if super_user else None,
            total_spent=total_spent,
            questions_remaining=questions_remaining,
            updated_at=now,
        )

    async def project(self, user_id: str, now: datetime) -> UserSubscriptionStatus:
        """Recomputes and upserts the status row. Call under the user's lock."""
        status = await self.compute(user_id, now)
        previous = await self.store.get_status(user_id)

        if previous is not None and previous.projection_key() == status.projection_key():
            return previous

        await self.store.save_status(status)
        logger.info(
            f"Projected user {user_id}: premium={status.is_premium} "
            f"super_user={status.is_super_user}"
        )
        return status

    async def consume_legacy_question(self, user_id: str, now: datetime) -> Optional[UserSubscriptionStatus]:
        """
        Spends a credit carried on a legacy super-user grant, which has no
        subscription row to charge. Returns None if there is nothing to spend.
        """
        status = await self.compute(user_id, now)
        if status.current_super_user_subscription_id or status.questions_remaining <= 0:
            return None
        status.questions_remaining -= 1
        await self.store.save_status(status)
        return status
