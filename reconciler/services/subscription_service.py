"""
reconciler/services/subscription_service.py

Purpose: Subscription state machine

- Creates and transitions gateway (recurring) subscriptions
- Synthetic subscriptions for one-off purchases, created directly ACTIVE
- Lazy expiry of subscriptions whose period has ended
- User cancellation and super-user question credits
"""

from datetime import datetime
from typing import List, Optional, Tuple

from reconciler.core.exceptions import ConflictError, InvalidStateTransition
from reconciler.core.logging import get_logger
from reconciler.db.store import Store
from reconciler.flow.states import (
    ENTITLING_SUBSCRIPTION_STATUSES,
    is_terminal_subscription,
    is_valid_subscription_transition,
)
from reconciler.models.payment import Payment, PaymentStatus
from reconciler.models.subscription import PlanType, Subscription, SubscriptionStatus
from reconciler.schemas.webhook import GatewayEvent, GatewayNotes
from reconciler.services.ledger_service import LedgerWrite
from reconciler.services.plan_catalog import Plan, get_plan, infer_plan
from reconciler.services.status_projector import is_live, questions_left
from utils.constants import (
    EVENT_PAYMENT_CAPTURED,
    EVENT_PAYMENT_FAILED,
    EVENT_ORDER_PAID,
    EVENT_SUBSCRIPTION_ACTIVATED,
    EVENT_SUBSCRIPTION_AUTHENTICATED,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_CHARGED,
    EVENT_SUBSCRIPTION_COMPLETED,
    EVENT_SUBSCRIPTION_HALTED,
    EVENT_SUBSCRIPTION_PENDING,
    EVENT_SUBSCRIPTION_RESUMED,
)
from utils.time_utils import add_months, from_unix, is_lapsed

logger = get_logger(__name__)

SUBSCRIPTION_EVENT_TARGETS = {
    EVENT_SUBSCRIPTION_AUTHENTICATED: None,  # Row only
    EVENT_SUBSCRIPTION_ACTIVATED: SubscriptionStatus.ACTIVE,
    EVENT_SUBSCRIPTION_CHARGED: SubscriptionStatus.ACTIVE,
    EVENT_SUBSCRIPTION_RESUMED: SubscriptionStatus.ACTIVE,
    EVENT_SUBSCRIPTION_PENDING: SubscriptionStatus.HALTED,
    EVENT_SUBSCRIPTION_HALTED: SubscriptionStatus.HALTED,
    EVENT_SUBSCRIPTION_CANCELLED: SubscriptionStatus.CANCELLED,
    EVENT_SUBSCRIPTION_COMPLETED: SubscriptionStatus.COMPLETED,
    EVENT_PAYMENT_CAPTURED: SubscriptionStatus.ACTIVE,
    EVENT_ORDER_PAID: SubscriptionStatus.ACTIVE,
}

_CHARGE_EVENTS = {
    EVENT_SUBSCRIPTION_ACTIVATED,
    EVENT_SUBSCRIPTION_CHARGED,
    EVENT_SUBSCRIPTION_RESUMED,
    EVENT_PAYMENT_CAPTURED,
    EVENT_ORDER_PAID,
}


class SubscriptionStateMachine:
    """
    Only writer of subscription rows.
    """

    def __init__(self, store: Store, grace_minutes: int = 0):
        self.store = store
        self.grace_minutes = grace_minutes

    # ==============================================
    # TRANSITIONS
    # ==============================================

    def _transition(self, subscription: Subscription, target: SubscriptionStatus, now: datetime) -> bool:
        """
        Moves a subscription to `target`. Returns False when already there.

        Raises:
            InvalidStateTransition: for edges outside the transition table
        """
        current = subscription.status
        if current == target.value:
            return False
        if not is_valid_subscription_transition(current, target):
            raise InvalidStateTransition(
                "subscription", current, target.value,
                details={"subscription_id": subscription.id}
            )
        subscription.status = target.value
        subscription.updated_at = now
        logger.info(f"Subscription {subscription.id}: {current} -> {target.value}")
        return True

    async def apply_event(
        self,
        event: GatewayEvent,
        user_id: str,
        ledger: Optional[LedgerWrite],
        now: datetime
    ) -> Optional[Subscription]:
        """
        Applies a gateway event to the subscription it concerns.

        Returns:
            The subscription written, or None if the event touches none
        """
        if event.gateway_subscription_id:
            return await self._apply_recurring(event, user_id, ledger, now)
        if ledger is not None:
            return await self._apply_one_off(event, user_id, ledger, now)
        return None

    # ==============================================
    # RECURRING (gateway subscriptions)
    # ==============================================

    async def _get_or_create(self, event: GatewayEvent, user_id: str, now: datetime) -> Tuple[Subscription, bool]:
        gateway_subscription_id = event.gateway_subscription_id
        subscription = await self.store.get_subscription_by_gateway_id(gateway_subscription_id)
        if subscription is not None:
            if subscription.user_id != user_id:
                # Another user's row must only change under that user's lock
                raise ConflictError(
                    f"Subscription {gateway_subscription_id} belongs to {subscription.user_id}, not {user_id}",
                    details={"subscription_id": subscription.id, "owner": subscription.user_id}
                )
            return subscription, False

        plan = infer_plan(
            event.notes,
            gateway_plan_id=event.subscription.plan_id if event.subscription else None,
            description=event.payment.description if event.payment else None,
            amount=event.payment.amount if event.payment else None,
        )
        subscription = Subscription(
            user_id=user_id,
            plan_type=plan.plan_type,
            plan_variant=plan.variant,
            gateway_subscription_id=gateway_subscription_id,
            gateway_plan_id=event.subscription.plan_id if event.subscription else None,
            status=SubscriptionStatus.CREATED,
            amount=plan.amount,
            created_at=now,
            updated_at=now,
        )
        logger.info(
            f"Created subscription {subscription.id} for {gateway_subscription_id} "
            f"({plan.plan_type} {plan.variant})"
        )
        return subscription, True

    def _sync_from_gateway(self, subscription: Subscription, event: GatewayEvent) -> None:
        entity = event.subscription
        if entity is None:
            return
        if entity.plan_id:
            subscription.gateway_plan_id = entity.plan_id
        if entity.current_start is not None:
            subscription.current_period_start = from_unix(entity.current_start)
        if entity.current_end is not None:
            subscription.current_period_end = from_unix(entity.current_end)
        if entity.charge_at is not None:
            subscription.next_billing_at = from_unix(entity.charge_at)
        if entity.total_count is not None:
            subscription.total_count = entity.total_count
        if entity.paid_count is not None:
            subscription.paid_count = entity.paid_count
        if entity.remaining_count is not None:
            subscription.remaining_count = entity.remaining_count

    def _plan(self, subscription: Subscription) -> Plan:
        return get_plan(subscription.plan_type, subscription.plan_variant) or infer_plan(
            GatewayNotes(), amount=subscription.amount
        )

    async def _apply_recurring(
        self,
        event: GatewayEvent,
        user_id: str,
        ledger: Optional[LedgerWrite],
        now: datetime
    ) -> Subscription:
        subscription, created = await self._get_or_create(event, user_id, now)
        snapshot = subscription.model_dump(exclude={"updated_at"})
        self._sync_from_gateway(subscription, event)

        if ledger is not None and ledger.newly_captured:
            if event.subscription is None or event.subscription.paid_count is None:
                subscription.paid_count += 1
            if event.subscription is None or event.subscription.current_end is None:
                self._start_period(subscription, now)
            subscription.questions_granted += self._plan(subscription).questions

        target = SUBSCRIPTION_EVENT_TARGETS.get(event.event)
        if event.event == EVENT_PAYMENT_FAILED:
            # A failed first charge leaves the subscription in CREATED
            if subscription.status == SubscriptionStatus.ACTIVE.value:
                target = SubscriptionStatus.HALTED

        if target is not None and event.payment is not None and is_terminal_subscription(subscription.status):
            # Late charge on a finished subscription: the ledger keeps it, the state doesn't move
            logger.info(
                f"{event.event} for {subscription.status} subscription {subscription.id}; "
                f"leaving status unchanged"
            )
            target = None

        if target is not None:
            self._transition(subscription, target, now)

        if (
            event.event in _CHARGE_EVENTS
            and subscription.status == SubscriptionStatus.ACTIVE.value
            and subscription.total_count
            and subscription.paid_count >= subscription.total_count
        ):
            self._transition(subscription, SubscriptionStatus.COMPLETED, now)

        if created or subscription.model_dump(exclude={"updated_at"}) != snapshot:
            subscription.updated_at = now
            await self.store.save_subscription(subscription)
        return subscription

    def _start_period(self, subscription: Subscription, now: datetime) -> None:
        plan = self._plan(subscription)
        if subscription.current_period_end and subscription.current_period_end > now:
            # Renewal charged before the old period ran out
            start = subscription.current_period_end
        else:
            start = now
        subscription.current_period_start = start
        subscription.current_period_end = add_months(start, plan.duration_months)

    # ==============================================
    # ONE-OFF PURCHASES
    # ==============================================

    async def _apply_one_off(
        self,
        event: GatewayEvent,
        user_id: str,
        ledger: LedgerWrite,
        now: datetime
    ) -> Optional[Subscription]:
        payment = ledger.payment
        existing = await self.store.get_subscription_by_source_payment(payment.payment_id)

        if ledger.newly_refunded:
            if existing is None:
                return None
            if existing.status in {s.value for s in ENTITLING_SUBSCRIPTION_STATUSES}:
                self._transition(existing, SubscriptionStatus.CANCELLED, now)
            if existing.current_period_end is None or existing.current_period_end > now:
                existing.current_period_end = now
            existing.updated_at = now
            await self.store.save_subscription(existing)
            return existing

        if payment.status != PaymentStatus.CAPTURED.value or existing is not None:
            return existing

        return await self._create_purchase(event, user_id, payment, now)

    async def _create_purchase(
        self,
        event: GatewayEvent,
        user_id: str,
        payment: Payment,
        now: datetime
    ) -> Subscription:
        plan = infer_plan(event.notes, description=payment.description, amount=payment.amount)
        start = payment.captured_at or now
        subscription = Subscription(
            user_id=user_id,
            plan_type=plan.plan_type,
            plan_variant=plan.variant,
            source_payment_id=payment.payment_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=add_months(start, plan.duration_months),
            total_count=1,
            paid_count=1,
            remaining_count=0,
            questions_granted=plan.questions,
            amount=payment.amount,
            currency=payment.currency,
            created_at=now,
            updated_at=now,
        )
        await self.store.save_subscription(subscription)
        logger.info(
            f"One-off {plan.plan_type} {plan.variant} purchase {payment.payment_id} "
            f"active until {subscription.current_period_end.isoformat()}"
        )
        return subscription

    # ==============================================
    # LAZY EXPIRY
    # ==============================================

    def lapsed(self, subscriptions: List[Subscription], now: datetime) -> List[Subscription]:
        return [
            s for s in subscriptions
            if s.status in {status.value for status in ENTITLING_SUBSCRIPTION_STATUSES}
            and is_lapsed(s.current_period_end, now, self.grace_minutes)
        ]

    async def expire_lapsed(self, user_id: str, now: datetime) -> List[Subscription]:
        """
        Expires every active/halted subscription of a user whose period has
        ended. Safe to call from a read path or a periodic sweep.
        """
        expired = []
        for subscription in self.lapsed(await self.store.list_subscriptions_for_user(user_id), now):
            self._transition(subscription, SubscriptionStatus.EXPIRED, now)
            await self.store.save_subscription(subscription)
            expired.append(subscription)
        if expired:
            logger.info(f"Expired {len(expired)} lapsed subscription(s) for user {user_id}")
        return expired

    # ==============================================
    # USER ACTIONS
    # ==============================================

    async def cancel(self, subscription: Subscription, now: datetime) -> Subscription:
        """
        Cancels a subscription on the user's request. The paid-up period
        (and any question credits in it) stays usable until it ends.

        Cancelling twice is a no-op.

        Raises:
            InvalidStateTransition: if the subscription completed or expired
        """
        if self._transition(subscription, SubscriptionStatus.CANCELLED, now):
            await self.store.save_subscription(subscription)
        return subscription

    async def consume_question(self, user_id: str, now: datetime) -> Optional[Subscription]:
        """
        Uses one question credit, taken from the live super-user
        subscription whose period ends first.

        Returns:
            The subscription charged, or None when no credits are left
        """
        candidates = [
            s for s in await self.store.list_subscriptions_for_user(user_id)
            if s.plan_type == PlanType.SUPER_USER.value and is_live(s, now) and questions_left(s) > 0
        ]
        if not candidates:
            return None

        subscription = min(candidates, key=lambda s: s.current_period_end or datetime.max)
        subscription.questions_used += 1
        subscription.updated_at = now
        await self.store.save_subscription(subscription)
        logger.info(
            f"Question consumed from {subscription.id}; "
            f"{questions_left(subscription)} left on it"
        )
        return subscription
