"""
reconciler/flow/pipeline.py

Purpose: Drives one gateway event through the reconciliation components

Guard -> Resolver -> [owner lock] -> transaction(Ledger -> State machine -> Projector)

- Duplicates are answered before any lock is taken
- The owner is re-read under the lock; if it moved, the lock is re-taken for the new owner
- Unresolved payments are still written to the ledger and queued for an operator
- Forbidden transitions roll back the event and are acknowledged
- Storage failures and lock timeouts propagate as retryable errors
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from reconciler.core.exceptions import (
    ConflictError,
    InvalidStateTransition,
    LockTimeout,
    UnresolvedIdentity,
)
from reconciler.core.logging import get_logger, LogContext
from reconciler.db.store import Store, UserLocks
from reconciler.models.payment import Payment, PaymentStatus, ResolutionMethod
from reconciler.schemas.webhook import GatewayEvent, PaymentEntity
from reconciler.services.identity_resolver import IdentityResolver, Resolution
from reconciler.services.idempotency_service import IdempotencyGuard
from reconciler.services.ledger_service import LedgerWrite, PaymentLedgerWriter
from reconciler.services.status_projector import StatusProjector
from reconciler.services.subscription_service import SubscriptionStateMachine
from utils.constants import EVENT_ORDER_PAID, EVENT_PAYMENT_CAPTURED, EVENT_REFUND_PROCESSED
from utils.time_utils import utcnow

logger = get_logger(__name__)

SUPPORTED_EVENT_PREFIXES = ("payment.", "subscription.")
SUPPORTED_EVENTS = {EVENT_ORDER_PAID, EVENT_REFUND_PROCESSED}

# An owner is written once, so one hop from the payment lock is the most expected
MAX_LOCK_ATTEMPTS = 3


@dataclass
class PipelineResult:
    status: str  # processed | duplicate | unresolved | ignored
    payment_id: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None


def is_supported(event_name: str) -> bool:
    return event_name in SUPPORTED_EVENTS or event_name.startswith(SUPPORTED_EVENT_PREFIXES)


def payment_lock_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


class _OwnerChanged(Exception):
    """The payment gained an owner other than the one whose lock is held."""

    def __init__(self, lock_key: str):
        super().__init__(lock_key)
        self.lock_key = lock_key


class EventPipeline:

    def __init__(
        self,
        store: Store,
        locks: UserLocks,
        guard: IdempotencyGuard,
        resolver: IdentityResolver,
        ledger: PaymentLedgerWriter,
        state_machine: SubscriptionStateMachine,
        projector: StatusProjector,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.locks = locks
        self.guard = guard
        self.resolver = resolver
        self.ledger = ledger
        self.state_machine = state_machine
        self.projector = projector
        self.lock_timeout = lock_timeout
        self.clock = clock

    async def process(self, event: GatewayEvent) -> PipelineResult:
        """
        Processes one authenticated, parsed gateway event.

        Raises:
            TransientStorageFailure: storage failed; everything was rolled back
            LockTimeout: the user's lock could not be acquired in time
        """
        with LogContext(event=event.event, payment_id=event.payment_id):
            if not is_supported(event.event):
                logger.info(f"Ignoring unsupported event {event.event}")
                return PipelineResult(status="ignored", payment_id=event.payment_id,
                                      message=f"Event {event.event} is not handled")

            payment: Optional[Payment] = None
            if event.payment is not None:
                decision = await self.guard.check(event)
                if decision.already_processed:
                    return PipelineResult(
                        status="duplicate",
                        payment_id=event.payment_id,
                        user_id=decision.payment.resolved_user_id,
                        message="Event already processed",
                    )
                payment = decision.payment

            try:
                resolution: Optional[Resolution] = await self.resolver.resolve(event, payment)
            except UnresolvedIdentity as e:
                logger.warning(f"Unresolved identity: {e.details}")
                if event.payment is None:
                    # Subscription event with no payment to park
                    return PipelineResult(status="unresolved", message=e.message)
                resolution = None

            try:
                owner, _ = await self._owner(event, resolution)
                lock_key = owner or payment_lock_key(event.payment_id)
                for _ in range(MAX_LOCK_ATTEMPTS):
                    try:
                        async with self.locks.hold(lock_key, self.lock_timeout):
                            return await self._apply(event, resolution, lock_key)
                    except _OwnerChanged as moved:
                        logger.info(f"Owner changed while waiting on {lock_key}; retrying under {moved.lock_key}")
                        lock_key = moved.lock_key
                raise LockTimeout(
                    "Owner kept changing while acquiring the user lock",
                    details={"payment_id": event.payment_id}
                )
            except (InvalidStateTransition, ConflictError) as e:
                logger.warning(f"{e.message}; event acknowledged without changes")
                return PipelineResult(
                    status="ignored",
                    payment_id=event.payment_id,
                    user_id=resolution.user_id if resolution else None,
                    message=e.message,
                )

    async def _owner(
        self,
        event: GatewayEvent,
        resolution: Optional[Resolution]
    ) -> Tuple[Optional[str], Optional[Resolution]]:
        """
        The user whose rows this event will touch, from what is stored now.

        A payment that already has an owner keeps it. A known gateway
        subscription's owner outranks this delivery's match, because the
        subscription row is what the event mutates.

        Returns:
            (owner or None, the resolution the ledger should record)

        Raises:
            ConflictError: the payment and the subscription belong to different users
        """
        subscription_owner = None
        if event.gateway_subscription_id:
            subscription = await self.store.get_subscription_by_gateway_id(event.gateway_subscription_id)
            if subscription is not None:
                subscription_owner = subscription.user_id

        payment_owner = None
        if event.payment is not None:
            stored = await self.store.get_payment(event.payment_id)
            if stored is not None:
                payment_owner = stored.resolved_user_id

        if subscription_owner and payment_owner and subscription_owner != payment_owner:
            raise ConflictError(
                f"Payment {event.payment_id} belongs to {payment_owner} but subscription "
                f"{event.gateway_subscription_id} belongs to {subscription_owner}",
                details={"payment_owner": payment_owner, "subscription_owner": subscription_owner}
            )

        if subscription_owner and (resolution is None or resolution.user_id != subscription_owner):
            if resolution is not None:
                logger.warning(
                    f"Event matched {resolution.user_id} but subscription "
                    f"{event.gateway_subscription_id} belongs to {subscription_owner}; using the owner"
                )
            resolution = Resolution(user_id=subscription_owner, method=ResolutionMethod.SUBSCRIPTION_OWNER)

        owner = payment_owner or (resolution.user_id if resolution else None)
        return owner, resolution

    async def _apply(
        self,
        event: GatewayEvent,
        resolution: Optional[Resolution],
        lock_key: str
    ) -> PipelineResult:
        async with self.store.transaction():
            owner, resolution = await self._owner(event, resolution)
            expected_key = owner or payment_lock_key(event.payment_id)
            if expected_key != lock_key:
                # Assigned (by an operator or another delivery) while we waited
                raise _OwnerChanged(expected_key)

            now = self.clock()

            ledger_write: Optional[LedgerWrite] = None
            if event.payment is not None:
                ledger_write = await self.ledger.record(event, resolution, now)

            if ledger_write is not None:
                user_id = ledger_write.payment.resolved_user_id
            else:
                user_id = resolution.user_id if resolution else None

            if user_id is None:
                return PipelineResult(
                    status="unresolved",
                    payment_id=event.payment_id,
                    message="Payment recorded; awaiting manual reconciliation",
                )

            with LogContext(user_id=user_id):
                await self._advance_user(event, user_id, ledger_write, now)

        return PipelineResult(status="processed", payment_id=event.payment_id, user_id=user_id)


    async def _advance_user(
        self,
        event: GatewayEvent,
        user_id: str,
        ledger_write: Optional[LedgerWrite],
        now: datetime
    ) -> None:
        await self.state_machine.apply_event(event, user_id, ledger_write, now)
        await self.state_machine.expire_lapsed(user_id, now)
        await self.projector.project(user_id, now)

    async def apply_manual_resolution(self, payment_id: str, user_id: str) -> Payment:
        """
        Operator write-back: assigns the payment's owner, then replays the
        payment's current status through the state machine and projector.
        """
        with LogContext(payment_id=payment_id, user_id=user_id):
            async with self.locks.hold(payment_lock_key(payment_id), self.lock_timeout):
                async with self.locks.hold(user_id, self.lock_timeout):
                    async with self.store.transaction():
                        now = self.clock()
                        before = await self.store.get_payment(payment_id)
                        payment = await self.ledger.assign_owner(payment_id, user_id, now)

                        if (
                            before is not None
                            and before.resolved_user_id is None
                            and payment.status == PaymentStatus.CAPTURED.value
                        ):
                            # The state machine never saw this capture
                            ledger_write = LedgerWrite(
                                payment=payment,
                                previous_status=payment.status,
                                newly_captured=True,
                                newly_refunded=False,
                            )
                            await self.state_machine.apply_event(
                                _replay_event(payment, now), user_id, ledger_write, now
                            )
                        await self.state_machine.expire_lapsed(user_id, now)
                        await self.projector.project(user_id, now)

            logger.info(f"Payment {payment_id} manually assigned to user {user_id}")
            return payment


def _replay_event(payment: Payment, now: datetime) -> GatewayEvent:
    entity = PaymentEntity(
        id=payment.payment_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        method=payment.method,
        email=payment.email,
        contact=payment.contact,
        order_id=payment.order_id,
        subscription_id=payment.gateway_subscription_id,
        description=payment.description,
        notes=payment.notes,
    )
    return GatewayEvent(event=EVENT_PAYMENT_CAPTURED, payment=entity, received_at=now)
