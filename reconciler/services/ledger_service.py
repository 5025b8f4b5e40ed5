"""
reconciler/services/ledger_service.py

Purpose: Payment ledger writes

- Moves a payment along the status lattice (never backwards)
- Records the resolved owner once; an owner is never replaced
- Flags unresolved payments for manual reconciliation
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from reconciler.core.exceptions import ConflictError, InvalidStateTransition
from reconciler.core.logging import get_logger
from reconciler.db.store import Store
from reconciler.flow.states import is_valid_payment_transition
from reconciler.models.payment import Payment, PaymentStatus, ResolutionMethod
from reconciler.schemas.webhook import GatewayEvent
from reconciler.services.identity_resolver import Resolution
from utils.constants import (
    EVENT_ORDER_PAID,
    EVENT_PAYMENT_AUTHORIZED,
    EVENT_PAYMENT_CAPTURED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_REFUNDED,
    EVENT_REFUND_PROCESSED,
    EVENT_SUBSCRIPTION_CHARGED,
)

logger = get_logger(__name__)

EVENT_TARGET_STATUS = {
    EVENT_PAYMENT_AUTHORIZED: PaymentStatus.AUTHORIZED,
    EVENT_PAYMENT_CAPTURED: PaymentStatus.CAPTURED,
    EVENT_ORDER_PAID: PaymentStatus.CAPTURED,
    EVENT_SUBSCRIPTION_CHARGED: PaymentStatus.CAPTURED,
    EVENT_PAYMENT_FAILED: PaymentStatus.FAILED,
    EVENT_PAYMENT_REFUNDED: PaymentStatus.REFUNDED,
    EVENT_REFUND_PROCESSED: PaymentStatus.REFUNDED,
}


def target_status(event: GatewayEvent) -> PaymentStatus:
    """
    Status an event asks for: by event name, else the entity's own status.
    """
    if event.event in EVENT_TARGET_STATUS:
        return EVENT_TARGET_STATUS[event.event]
    return PaymentStatus(event.payment.status)


@dataclass
class LedgerWrite:
    payment: Payment
    previous_status: str
    newly_captured: bool
    newly_refunded: bool


class PaymentLedgerWriter:
    """Only writer of payment rows after the guard's initial insert."""

    def __init__(self, store: Store):
        self.store = store

    async def record(
        self,
        event: GatewayEvent,
        resolution: Optional[Resolution],
        now: datetime
    ) -> LedgerWrite:
        """
        Applies an event to its payment row.

        Raises:
            InvalidStateTransition: when the event would move the payment
                backwards or out of a terminal status
        """
        payment = await self.store.get_payment(event.payment_id)
        if payment is None:
            # The guard always inserts first
            raise ConflictError(f"Payment {event.payment_id} missing from ledger")

        previous = payment.status
        target = target_status(event)
        snapshot = payment.model_dump()

        if target.value != previous:
            if not is_valid_payment_transition(previous, target):
                raise InvalidStateTransition(
                    "payment", previous, target.value,
                    details={"payment_id": payment.payment_id, "event": event.event}
                )
            payment.status = target.value
            if target == PaymentStatus.CAPTURED:
                payment.captured_at = now
            elif target == PaymentStatus.FAILED:
                payment.failure_reason = event.payment.error_description or "Payment failed at gateway"
            logger.info(f"Payment {payment.payment_id}: {previous} -> {target.value}")

        self._apply_resolution(payment, resolution)

        if event.event not in payment.applied_events:
            payment.applied_events.append(event.event)

        if payment.model_dump() != snapshot:
            payment.updated_at = now
            await self.store.save_payment(payment)

        return LedgerWrite(
            payment=payment,
            previous_status=previous,
            newly_captured=payment.status == PaymentStatus.CAPTURED.value and previous != payment.status,
            newly_refunded=payment.status == PaymentStatus.REFUNDED.value and previous != payment.status,
        )

    def _apply_resolution(self, payment: Payment, resolution: Optional[Resolution]) -> None:
        if payment.resolved_user_id:
            if resolution and resolution.user_id != payment.resolved_user_id:
                logger.warning(
                    f"Payment {payment.payment_id} already belongs to {payment.resolved_user_id}; "
                    f"ignoring match to {resolution.user_id}"
                )
            return

        if resolution is None:
            if not payment.needs_reconciliation:
                logger.warning(f"Payment {payment.payment_id} queued for manual reconciliation")
            payment.needs_reconciliation = True
            return

        payment.resolved_user_id = resolution.user_id
        payment.resolution_method = resolution.method.value
        payment.needs_reconciliation = False

    async def assign_owner(self, payment_id: str, user_id: str, now: datetime) -> Payment:
        """
        Operator write-back: attaches an unresolved payment to a user.

        Raises:
            ConflictError: if the payment already belongs to someone else
        """
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise ConflictError(f"Payment {payment_id} missing from ledger")

        if payment.resolved_user_id and payment.resolved_user_id != user_id:
            raise ConflictError(
                f"Payment {payment_id} is already resolved to another user",
                details={"resolved_user_id": payment.resolved_user_id}
            )

        if payment.resolved_user_id != user_id:
            payment.resolved_user_id = user_id
            payment.resolution_method = ResolutionMethod.MANUAL.value
        payment.needs_reconciliation = False
        payment.updated_at = now
        await self.store.save_payment(payment)
        return payment
