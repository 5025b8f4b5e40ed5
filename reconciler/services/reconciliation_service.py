"""
reconciler/services/reconciliation_service.py

Purpose: Entry point for everything the API layer needs

- Wires the components around one injected Store and UserLocks
- Webhook processing, status reads with lazy expiry, manual reconciliation
- Payment and subscription history
- User cancellation and question credit spending
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from reconciler.core.exceptions import QuestionCreditsExhausted, ResourceNotFoundError
from reconciler.core.logging import get_logger, LogContext
from reconciler.db.store import Store, UserLocks
from reconciler.flow.pipeline import EventPipeline, PipelineResult
from reconciler.models.payment import Payment
from reconciler.models.subscription import Subscription, UserSubscriptionStatus
from reconciler.schemas.webhook import GatewayEvent
from reconciler.services.identity_resolver import IdentityResolver
from reconciler.services.idempotency_service import IdempotencyGuard
from reconciler.services.ledger_service import PaymentLedgerWriter
from reconciler.services.status_projector import StatusProjector
from reconciler.services.subscription_service import SubscriptionStateMachine
from utils.time_utils import is_future, utcnow
from utils.validation_utils import sanitize_input

logger = get_logger(__name__)


class ReconciliationService:
    """
    One instance per process. Holds no state of its own beyond the
    injected store, locks and clock.
    """

    def __init__(
        self,
        store: Store,
        locks: UserLocks,
        lock_timeout: float = 5.0,
        default_country_code: str = "91",
        generic_email_addresses: Optional[List[str]] = None,
        generic_email_domains: Optional[List[str]] = None,
        generic_email_local_parts: Optional[List[str]] = None,
        grace_minutes: int = 0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.locks = locks
        self.lock_timeout = lock_timeout
        self.clock = clock

        self.guard = IdempotencyGuard(store)
        self.resolver = IdentityResolver(
            store,
            default_country_code=default_country_code,
            generic_email_addresses=generic_email_addresses,
            generic_email_domains=generic_email_domains,
            generic_email_local_parts=generic_email_local_parts,
        )
        self.ledger = PaymentLedgerWriter(store)
        self.state_machine = SubscriptionStateMachine(store, grace_minutes=grace_minutes)
        self.projector = StatusProjector(store)
        self.pipeline = EventPipeline(
            store,
            locks,
            self.guard,
            self.resolver,
            self.ledger,
            self.state_machine,
            self.projector,
            lock_timeout=lock_timeout,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, store: Store, locks: UserLocks, settings) -> "ReconciliationService":
        return cls(
            store,
            locks,
            lock_timeout=settings.USER_LOCK_TIMEOUT_SECONDS,
            default_country_code=settings.DEFAULT_COUNTRY_CODE,
            generic_email_addresses=settings.GENERIC_EMAIL_ADDRESSES,
            generic_email_domains=settings.GENERIC_EMAIL_DOMAINS,
            generic_email_local_parts=settings.GENERIC_EMAIL_LOCAL_PARTS,
            grace_minutes=settings.EXPIRY_GRACE_MINUTES,
        )

    # ==============================================
    # WEBHOOKS
    # ==============================================

    async def process_event(self, event: GatewayEvent) -> PipelineResult:
        return await self.pipeline.process(event)

    async def quarantine(self, raw_body: str, reason: str, details=None) -> None:
        await self.store.quarantine_event(raw_body, reason, details)
        logger.warning(f"Quarantined webhook payload: {reason}")

    # ==============================================
    # STATUS READS
    # ==============================================

    async def _require_user(self, user_id: str) -> None:
        if await self.store.get_user(user_id) is None:
            raise ResourceNotFoundError(f"User {user_id} not found")

    def _looks_stale(
        self,
        status: Optional[UserSubscriptionStatus],
        subscriptions: List[Subscription],
        now: datetime
    ) -> bool:
        if status is None:
            return True
        if self.state_machine.lapsed(subscriptions, now):
            return True
        if status.is_premium and status.premium_expires_at and not is_future(status.premium_expires_at, now):
            return True
        if status.is_super_user and status.super_user_expires_at and not is_future(status.super_user_expires_at, now):
            return True
        return False

    async def get_status(self, user_id: str, verify: bool = False) -> UserSubscriptionStatus:
        """
        Current status of a user.

        The stored row is returned as-is unless it may be stale (a period
        has ended since it was written) or `verify` is set; then lapsed
        subscriptions are expired and the row is re-projected under the
        user's lock.

        Raises:
            ResourceNotFoundError: if the user doesn't exist
            LockTimeout: if a re-projection couldn't take the user's lock
        """
        with LogContext(user_id=user_id):
            now = self.clock()
            status = await self.store.get_status(user_id)
            if status is None:
                await self._require_user(user_id)

            subscriptions = await self.store.list_subscriptions_for_user(user_id)
            if not verify and not self._looks_stale(status, subscriptions, now):
                return status

            async with self.locks.hold(user_id, self.lock_timeout):
                async with self.store.transaction():
                    now = self.clock()
                    await self.state_machine.expire_lapsed(user_id, now)
                    if verify and status is not None:
                        recomputed = await self.projector.compute(user_id, now)
                        if recomputed.projection_key() != status.projection_key():
                            logger.warning(
                                f"Stored status for {user_id} differed from ledger; re-projecting",
                                extra={"stored": status.model_dump(mode="json"),
                                       "recomputed": recomputed.model_dump(mode="json")}
                            )
                    return await self.projector.project(user_id, now)

    # ==============================================
    # MANUAL RECONCILIATION
    # ==============================================

    async def list_unresolved(self, limit: int = 50, skip: int = 0) -> Tuple[int, List[Payment]]:
        count = await self.store.count_unresolved_payments()
        payments = await self.store.list_unresolved_payments(limit=limit, skip=skip)
        return count, payments

    async def resolve_manually(self, payment_id: str, user_id: str, operator: Optional[str] = None) -> Payment:
        """
        Assigns an unresolved payment to a user and re-runs the ledger,
        state machine and projector for it.

        Raises:
            ResourceNotFoundError: unknown payment or user
            ConflictError: payment already belongs to a different user
        """
        if await self.store.get_payment(payment_id) is None:
            raise ResourceNotFoundError(f"Payment {payment_id} not found")
        await self._require_user(user_id)

        payment = await self.pipeline.apply_manual_resolution(payment_id, user_id)
        logger.info(
            f"Manual reconciliation of {payment_id} -> {user_id} "
            f"by {sanitize_input(operator or 'unknown', max_length=100)}"
        )
        return payment

    # ==============================================
    # HISTORY
    # ==============================================

    async def list_payments(self, user_id: str) -> List[Payment]:
        await self._require_user(user_id)
        return await self.store.list_payments_for_user(user_id)

    async def list_subscriptions(self, user_id: str) -> List[Subscription]:
        await self._require_user(user_id)
        return await self.store.list_subscriptions_for_user(user_id)

    # ==============================================
    # USER ACTIONS
    # ==============================================

    async def cancel_subscription(self, user_id: str, subscription_id: str) -> Subscription:
        """
        Cancels one of the user's subscriptions and re-projects the user.

        Raises:
            ResourceNotFoundError: unknown user, or the subscription isn't theirs
            InvalidStateTransition: the subscription already completed or expired
        """
        await self._require_user(user_id)
        with LogContext(user_id=user_id):
            async with self.locks.hold(user_id, self.lock_timeout):
                async with self.store.transaction():
                    subscription = await self.store.get_subscription(subscription_id)
                    if subscription is None or subscription.user_id != user_id:
                        raise ResourceNotFoundError(f"Subscription {subscription_id} not found")

                    now = self.clock()
                    await self.state_machine.cancel(subscription, now)
                    await self.state_machine.expire_lapsed(user_id, now)
                    await self.projector.project(user_id, now)

            logger.info(f"Subscription {subscription_id} cancelled by request")
            return subscription

    async def consume_question(self, user_id: str) -> UserSubscriptionStatus:
        """
        Spends one question credit. Premium users ask without limit, so
        nothing is spent for them.

        Raises:
            ResourceNotFoundError: unknown user
            QuestionCreditsExhausted: no live super-user credits left
        """
        await self._require_user(user_id)
        with LogContext(user_id=user_id):
            async with self.locks.hold(user_id, self.lock_timeout):
                async with self.store.transaction():
                    now = self.clock()
                    await self.state_machine.expire_lapsed(user_id, now)
                    current = await self.projector.compute(user_id, now)
                    if not current.is_premium:
                        spent = await self.state_machine.consume_question(user_id, now)
                        if spent is None and await self.projector.consume_legacy_question(user_id, now) is None:
                            raise QuestionCreditsExhausted(details={"user_id": user_id})
                    return await self.projector.project(user_id, now)
