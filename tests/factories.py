"""
Builders for gateway payloads and an in-memory service used across tests.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from reconciler.db.memory_store import InMemoryStore, InMemoryUserLocks
from reconciler.models.user import User
from reconciler.services.reconciliation_service import ReconciliationService


SCENARIO_PAYMENT_ID = "pay_R6yeWtx4jUG6dS"
SCENARIO_USER_ID = "44885683"


class FakeClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 9, 1, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def default_users() -> List[User]:
    return [
        User(id=SCENARIO_USER_ID, email="chief.engineer@qaaq.app", whatsapp_number="+919820012345",
             full_name="Chief Engineer"),
        User(id="user-email", email="Second.Officer@QAAQ.app", full_name="Second Officer"),
        User(id="user-contact", whatsapp_number="918973297600", full_name="Third Officer"),
        User(id="user-phone", phone="9876543210", full_name="Bosun"),
    ]


def build_service(
    users: Optional[List[User]] = None,
    store: Optional[InMemoryStore] = None,
    clock: Optional[FakeClock] = None,
    locks: Optional[InMemoryUserLocks] = None,
    lock_timeout: float = 1.0
) -> ReconciliationService:
    store = store or InMemoryStore()
    for user in default_users() if users is None else users:
        store.add_user(user)
    return ReconciliationService(
        store,
        locks or InMemoryUserLocks(),
        lock_timeout=lock_timeout,
        generic_email_addresses=["void@razorpay.com", "void@gateway.com"],
        generic_email_domains=["example.com"],
        clock=clock or FakeClock(),
    )


def payment_entity(
    payment_id: str = SCENARIO_PAYMENT_ID,
    amount: int = 45100,
    status: str = "captured",
    email: Optional[str] = "void@gateway.com",
    contact: Optional[str] = "+91 8973 297600",
    notes: Any = None,
    **extra
) -> Dict[str, Any]:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "upi",
        "email": email,
        "contact": contact,
        "notes": {"user_id": SCENARIO_USER_ID} if notes is None else notes,
        "created_at": 1756720800,
    }
    entity.update(extra)
    return entity


def payment_event(event: str = "payment.captured", **kwargs) -> Dict[str, Any]:
    return {
        "entity": "event",
        "event": event,
        "payload": {"payment": {"entity": payment_entity(**kwargs)}},
    }


def subscription_entity(
    subscription_id: str = "sub_RzpAbc123",
    plan_id: str = "plan_premium_monthly",
    status: str = "active",
    notes: Any = None,
    **extra
) -> Dict[str, Any]:
    entity = {
        "id": subscription_id,
        "entity": "subscription",
        "plan_id": plan_id,
        "status": status,
        "notes": {"user_id": SCENARIO_USER_ID} if notes is None else notes,
    }
    entity.update(extra)
    return entity


def subscription_event(
    event: str,
    payment: Optional[Dict[str, Any]] = None,
    **kwargs
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"subscription": {"entity": subscription_entity(**kwargs)}}
    if payment is not None:
        payload["payment"] = {"entity": payment}
    return {"entity": "event", "event": event, "payload": payload}


def unix(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds())
