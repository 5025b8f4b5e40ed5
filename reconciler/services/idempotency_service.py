"""
reconciler/services/idempotency_service.py

Purpose: Duplicate delivery detection

- Atomic insert-or-get of the payment row keyed by gateway payment id
- Reports whether this exact event was already applied to a settled payment
- Runs before the per-user lock; never writes a final status
"""

from dataclasses import dataclass

from reconciler.core.logging import get_logger
from reconciler.db.store import Store
from reconciler.flow.states import is_terminal_payment
from reconciler.models.payment import Payment, PaymentStatus
from reconciler.schemas.webhook import GatewayEvent
from utils.time_utils import from_unix, utcnow

logger = get_logger(__name__)


@dataclass
class GuardDecision:
    payment: Payment
    inserted: bool
    already_processed: bool


def skeleton_payment(event: GatewayEvent) -> Payment:
    """
    Payment row holding only the fields that never change after creation.
    """
    entity = event.payment
    now = utcnow()
    return Payment(
        payment_id=entity.id,
        order_id=entity.order_id,
        amount=entity.amount,
        currency=entity.currency,
        status=PaymentStatus.CREATED,
        method=entity.method,
        email=entity.email,
        contact=entity.contact,
        description=entity.description,
        notes=entity.notes.as_dict(),
        gateway_subscription_id=event.gateway_subscription_id,
        created_at=from_unix(entity.created_at) or now,
        updated_at=now,
    )


class IdempotencyGuard:
    """
    Deduplicates gateway events by payment id.

    Two different events may legitimately carry the same payment id
    (payment.captured and subscription.charged for one renewal), so a row
    only counts as processed for the event names recorded on it.
    """

    def __init__(self, store: Store):
        self.store = store

    async def check(self, event: GatewayEvent) -> GuardDecision:
        payment, inserted = await self.store.insert_or_get_payment(skeleton_payment(event))

        already_processed = (
            not inserted
            and is_terminal_payment(payment.status)
            and event.event in payment.applied_events
        )

        if already_processed:
            logger.info(
                f"Duplicate delivery of {event.event} for {payment.payment_id} "
                f"(status={payment.status})"
            )
        elif inserted:
            logger.debug(f"Recorded new payment {payment.payment_id}")

        return GuardDecision(payment=payment, inserted=inserted, already_processed=already_processed)
