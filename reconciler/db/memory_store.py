"""
reconciler/db/memory_store.py

Purpose: In-process implementations of Store and UserLocks

- Used by the test-suite and by STORAGE_BACKEND=memory local runs
- Transactions keep an undo journal per task and replay it on failure
- Locks are asyncio locks keyed by user, acquired with a bounded wait and
  dropped when idle
"""

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from reconciler.core.exceptions import LockTimeout
from reconciler.core.logging import get_logger
from reconciler.db.store import Store, UserLocks
from reconciler.models.payment import Payment
from reconciler.models.subscription import Subscription, UserSubscriptionStatus
from reconciler.models.user import User
from utils.time_utils import utcnow
from utils.validation_utils import normalize_email

logger = get_logger(__name__)

_MISSING = object()

# (table, key, previous value) entries for the transaction running in this task
_journal: ContextVar[Optional[list]] = ContextVar("memory_store_journal", default=None)


class InMemoryStore(Store):
    """Ledger store backed by dictionaries."""

    def __init__(self, users: Optional[List[User]] = None):
        self.users: Dict[str, User] = {}
        self.payments: Dict[str, Payment] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.statuses: Dict[str, UserSubscriptionStatus] = {}
        self.quarantined: List[Dict[str, Any]] = []
        for user in users or []:
            self.add_user(user)

    def add_user(self, user: User) -> None:
        """Seeds a user; in production the application owns this table."""
        self.users[user.id] = user

    # ---------------------------------------------- internals

    def _write(self, table: Dict[str, Any], key: str, value: Any) -> None:
        journal = _journal.get()
        if journal is not None:
            journal.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    @staticmethod
    def _copy(row):
        return row.model_copy(deep=True) if row is not None else None

    # ---------------------------------------------- users

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._copy(self.users.get(user_id))

    async def find_users_by_email(self, email: str) -> List[User]:
        return [
            self._copy(u) for u in self.users.values()
            if normalize_email(u.email) == email
        ]

    async def find_users_by_phone(self, candidates: List[str]) -> List[User]:
        wanted = set(candidates)
        return [
            self._copy(u) for u in self.users.values()
            if (u.whatsapp_number and u.whatsapp_number.strip() in wanted)
            or (u.phone and u.phone.strip() in wanted)
        ]

    # ---------------------------------------------- payments

    async def insert_or_get_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        # No await between lookup and insert, so this is atomic on the loop
        existing = self.payments.get(payment.payment_id)
        if existing is not None:
            return self._copy(existing), False
        self.payments[payment.payment_id] = self._copy(payment)
        return self._copy(payment), True

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self._copy(self.payments.get(payment_id))

    async def save_payment(self, payment: Payment) -> Payment:
        self._write(self.payments, payment.payment_id, self._copy(payment))
        return payment

    async def list_payments_for_user(self, user_id: str) -> List[Payment]:
        rows = [p for p in self.payments.values() if p.resolved_user_id == user_id]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return [self._copy(p) for p in rows]

    def _unresolved(self) -> List[Payment]:
        rows = [
            p for p in self.payments.values()
            if p.needs_reconciliation and p.resolved_user_id is None
        ]
        rows.sort(key=lambda p: p.created_at)
        return rows

    async def list_unresolved_payments(self, limit: int = 50, skip: int = 0) -> List[Payment]:
        return [self._copy(p) for p in self._unresolved()[skip:skip + limit]]

    async def count_unresolved_payments(self) -> int:
        return len(self._unresolved())

    # ---------------------------------------------- subscriptions

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._copy(self.subscriptions.get(subscription_id))

    async def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        for sub in self.subscriptions.values():
            if sub.gateway_subscription_id == gateway_subscription_id:
                return self._copy(sub)
        return None

    async def get_subscription_by_source_payment(self, payment_id: str) -> Optional[Subscription]:
        for sub in self.subscriptions.values():
            if sub.source_payment_id == payment_id:
                return self._copy(sub)
        return None

    async def list_subscriptions_for_user(self, user_id: str) -> List[Subscription]:
        rows = [s for s in self.subscriptions.values() if s.user_id == user_id]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return [self._copy(s) for s in rows]

    async def save_subscription(self, subscription: Subscription) -> Subscription:
        self._write(self.subscriptions, subscription.id, self._copy(subscription))
        return subscription

    # ---------------------------------------------- projection

    async def get_status(self, user_id: str) -> Optional[UserSubscriptionStatus]:
        return self._copy(self.statuses.get(user_id))

    async def save_status(self, status: UserSubscriptionStatus) -> UserSubscriptionStatus:
        self._write(self.statuses, status.user_id, self._copy(status))
        return status

    # ---------------------------------------------- quarantine

    async def quarantine_event(self, raw_body: str, reason: str, details: Any = None) -> None:
        self.quarantined.append({
            "raw_body": raw_body,
            "reason": reason,
            "details": details,
            "received_at": utcnow(),
        })

    # ---------------------------------------------- transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _journal.get() is not None:
            # Nested: the outer transaction owns the journal
            yield
            return

        journal: list = []
        token = _journal.set(journal)
        try:
            yield
        except BaseException:
            for table, key, previous in reversed(journal):
                if previous is _MISSING:
                    table.pop(key, None)
                else:
                    table[key] = previous
            logger.debug(f"Rolled back {len(journal)} in-memory writes")
            raise
        finally:
            _journal.reset(token)


class InMemoryUserLocks(UserLocks):
    """
    asyncio.Lock per key, created on demand and dropped once nobody holds
    or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}  # holders + waiters per key

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        # No await between lookup and registration, so this is atomic on the loop
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Lock wait for {key} exceeded {timeout}s")
                raise LockTimeout(details={"key": key, "timeout_seconds": timeout})
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def tracked_keys(self) -> List[str]:
        return list(self._locks)
