"""
reconciler/db/store.py

Purpose: Storage interfaces for the reconciliation engine

- Store: repository over users, payments, subscriptions and status rows
- UserLocks: per-user mutual exclusion with a bounded wait
- Both are injected into ReconciliationService so tests can swap in memory
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Tuple

from reconciler.models.payment import Payment
from reconciler.models.subscription import Subscription, UserSubscriptionStatus
from reconciler.models.user import User


class Store(ABC):
    """
    Ledger storage. Every write made inside `transaction()` commits or
    rolls back as a unit; writes outside it are immediately durable.
    """

    # ---------------------------------------------- users (read-only)

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def find_users_by_email(self, email: str) -> List[User]:
        """Users whose stored email normalizes to `email`."""

    @abstractmethod
    async def find_users_by_phone(self, candidates: List[str]) -> List[User]:
        """Users whose whatsapp_number or phone equals any candidate spelling."""

    # ---------------------------------------------- payments

    @abstractmethod
    async def insert_or_get_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        """
        Atomically inserts `payment` unless a row with its payment_id exists.

        Returns:
            (stored row, True if this call inserted it)
        """

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def save_payment(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def list_payments_for_user(self, user_id: str) -> List[Payment]:
        """Newest first."""

    @abstractmethod
    async def list_unresolved_payments(self, limit: int = 50, skip: int = 0) -> List[Payment]:
        """Payments flagged for manual reconciliation, oldest first."""

    @abstractmethod
    async def count_unresolved_payments(self) -> int:
        pass

    # ---------------------------------------------- subscriptions

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_subscription_by_source_payment(self, payment_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_subscriptions_for_user(self, user_id: str) -> List[Subscription]:
        """Newest first."""

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        pass

    # ---------------------------------------------- projection

    @abstractmethod
    async def get_status(self, user_id: str) -> Optional[UserSubscriptionStatus]:
        pass

    @abstractmethod
    async def save_status(self, status: UserSubscriptionStatus) -> UserSubscriptionStatus:
        pass

    # ---------------------------------------------- quarantine

    @abstractmethod
    async def quarantine_event(self, raw_body: str, reason: str, details: Any = None) -> None:
        pass

    # ---------------------------------------------- lifecycle

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        yield

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class UserLocks(ABC):
    """
    Per-user mutual exclusion. Different keys never block each other.
    """

    @abstractmethod
    def hold(self, key: str, timeout: float):
        """
        Async context manager holding the lock for `key`.

        Raises:
            LockTimeout: if the lock isn't acquired within `timeout` seconds
        """
