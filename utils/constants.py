"""
utils/constants.py

Purpose: Centralized static content

- Billing plan catalog (amounts in paise)
- Gateway event names
- Reusable status groupings

(Prevents hardcoding across the codebase)
"""

# ============================================================
# PLAN CATALOG
# ============================================================

SUBSCRIPTION_PLANS = {
    "premium": {
        "monthly": {
            "plan_id": "plan_premium_monthly",
            "amount": 45100,  # ₹451
            "duration_months": 1,
            "name": "Premium Monthly Plan",
            "display_price": "₹451",
        },
        "yearly": {
            "plan_id": "plan_premium_yearly",
            "amount": 261100,  # ₹2,611
            "duration_months": 12,
            "name": "Premium Yearly Plan",
            "display_price": "₹2,611",
        },
    },
    "super_user": {
        "topup_451": {
            "plan_id": "plan_super_topup_451",
            "amount": 45100,  # ₹451
            "duration_months": 1,
            "questions": 100,
            "name": "Super User Starter Pack",
            "display_price": "₹451",
        },
        "topup_4510": {
            "plan_id": "plan_super_topup_4510",
            "amount": 451000,  # ₹4,510
            "duration_months": 24,
            "questions": 1000,
            "name": "Super User Max Pack",
            "display_price": "₹4,510",
        },
    },
}

DEFAULT_PLAN = ("premium", "monthly")


# ============================================================
# GATEWAY EVENTS (Razorpay)
# ============================================================

EVENT_PAYMENT_AUTHORIZED = "payment.authorized"
EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_PAYMENT_REFUNDED = "payment.refunded"
EVENT_REFUND_PROCESSED = "refund.processed"
EVENT_ORDER_PAID = "order.paid"

EVENT_SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
EVENT_SUBSCRIPTION_ACTIVATED = "subscription.activated"
EVENT_SUBSCRIPTION_CHARGED = "subscription.charged"
EVENT_SUBSCRIPTION_PENDING = "subscription.pending"
EVENT_SUBSCRIPTION_HALTED = "subscription.halted"
EVENT_SUBSCRIPTION_RESUMED = "subscription.resumed"
EVENT_SUBSCRIPTION_CANCELLED = "subscription.cancelled"
EVENT_SUBSCRIPTION_COMPLETED = "subscription.completed"

SIGNATURE_HEADER = "X-Razorpay-Signature"
ADMIN_KEY_HEADER = "X-Admin-Key"
