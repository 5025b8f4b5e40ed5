"""
reconciler/db/indexes.py

Purpose: Database index management

- Unique keys that make the idempotency guard and lookups atomic
- Identity-matching indexes on the users collection
- TTL index so abandoned lock leases disappear
"""

from reconciler.db.mongo import (
    get_users_collection,
    get_payments_collection,
    get_subscriptions_collection,
    get_status_collection,
    get_quarantine_collection,
    get_locks_collection,
)
from reconciler.core.logging import get_logger

logger = get_logger(__name__)


async def create_indexes():
    """
    Creates all necessary database indexes.
    This function is idempotent - safe to run multiple times.
    """
    try:
        users = get_users_collection()
        payments = get_payments_collection()
        subscriptions = get_subscriptions_collection()
        statuses = get_status_collection()
        quarantine = get_quarantine_collection()
        locks = get_locks_collection()

        logger.info("Creating database indexes...")

        # ==============================================
        # PAYMENTS COLLECTION INDEXES
        # ==============================================

        # Idempotency key
        await payments.create_index("payment_id", unique=True, name="payment_id_unique")
        logger.debug("Created unique index on payments.payment_id")

        # User payment history
        await payments.create_index(
            [("resolved_user_id", 1), ("created_at", -1)],
            name="payment_user_idx"
        )
        logger.debug("Created compound index on payments.resolved_user_id + created_at")

        # Manual reconciliation queue
        await payments.create_index(
            [("needs_reconciliation", 1), ("created_at", 1)],
            name="payment_unresolved_idx"
        )
        logger.debug("Created compound index on payments.needs_reconciliation + created_at")

        # ==============================================
        # SUBSCRIPTIONS COLLECTION INDEXES
        # ==============================================

        await subscriptions.create_index("id", unique=True, name="subscription_id_unique")

        # Sparse: one-off purchases have no gateway subscription
        await subscriptions.create_index(
            "gateway_subscription_id",
            unique=True,
            sparse=True,
            name="gateway_subscription_id_unique"
        )
        logger.debug("Created unique sparse index on subscriptions.gateway_subscription_id")

        await subscriptions.create_index(
            "source_payment_id",
            unique=True,
            sparse=True,
            name="source_payment_id_unique"
        )
        logger.debug("Created unique sparse index on subscriptions.source_payment_id")

        await subscriptions.create_index(
            [("user_id", 1), ("created_at", -1)],
            name="subscription_user_idx"
        )
        logger.debug("Created compound index on subscriptions.user_id + created_at")

        # ==============================================
        # STATUS / USERS / MISC
        # ==============================================

        await statuses.create_index("user_id", unique=True, name="status_user_unique")
        logger.debug("Created unique index on user_subscription_status.user_id")

        await users.create_index("id", name="user_id_idx")
        await users.create_index("email", name="user_email_idx")
        await users.create_index("whatsapp_number", name="user_whatsapp_idx")
        await users.create_index("phone", name="user_phone_idx")
        logger.debug("Created identity indexes on users")

        await quarantine.create_index("received_at", name="quarantine_received_idx")

        # Delete lease documents once they expire
        await locks.create_index(
            "expires_at",
            expireAfterSeconds=0,
            name="lock_expiry_ttl_idx"
        )
        logger.debug("Created TTL index on locks.expires_at")

        logger.info("✅ All database indexes created successfully")

        payment_indexes = await payments.index_information()
        subscription_indexes = await subscriptions.index_information()
        logger.info(
            f"Index summary: Payments={len(payment_indexes)}, "
            f"Subscriptions={len(subscription_indexes)}"
        )

    except Exception as e:
        logger.error(f"Failed to create indexes: {str(e)}", exc_info=True)
        raise
