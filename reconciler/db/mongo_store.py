"""
reconciler/db/mongo_store.py

Purpose: MongoDB implementations of Store and UserLocks

- Insert-or-get on the unique payment_id index for the idempotency guard
- Multi-document transactions per event when MONGODB_USE_TRANSACTIONS is on
- Lease documents in the locks collection for per-user serialization
- Driver errors surface as TransientStorageFailure
"""

import asyncio
import re
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import timedelta
from functools import wraps
from typing import Any, AsyncIterator, List, Optional, Tuple
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from reconciler.core.exceptions import LockTimeout, TransientStorageFailure
from reconciler.core.logging import get_logger
from reconciler.db import mongo
from reconciler.db.store import Store, UserLocks
from reconciler.models.payment import Payment
from reconciler.models.subscription import Subscription, UserSubscriptionStatus
from reconciler.models.user import User
from utils.time_utils import utcnow

logger = get_logger(__name__)

# Session of the transaction running in this task, if any
_session: ContextVar[Optional[Any]] = ContextVar("mongo_session", default=None)

_NO_ID = {"_id": False}


def _storage_call(func):
    """
    Translates driver errors into TransientStorageFailure.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"MongoDB error in {func.__name__}: {e}")
            raise TransientStorageFailure(details={"operation": func.__name__}) from e
    return wrapper


def _user_from_doc(doc: dict) -> User:
    if "id" not in doc and "_id" in doc:
        doc["id"] = str(doc["_id"])
    return User.model_validate(doc)


class MongoStore(Store):
    """Ledger store over the collections declared in reconciler.db.mongo."""

    def __init__(self, client: AsyncIOMotorClient, database: AsyncIOMotorDatabase, use_transactions: bool = True):
        self.client = client
        self.db = database
        self.use_transactions = use_transactions
        self.users = database[mongo.USERS]
        self.payments = database[mongo.PAYMENTS]
        self.subscriptions = database[mongo.SUBSCRIPTIONS]
        self.statuses = database[mongo.USER_SUBSCRIPTION_STATUS]
        self.quarantine = database[mongo.QUARANTINED_EVENTS]

    @property
    def _s(self):
        return _session.get()

    # ---------------------------------------------- users

    @_storage_call
    async def get_user(self, user_id: str) -> Optional[User]:
        doc = await self.users.find_one({"id": user_id}, session=self._s)
        return _user_from_doc(doc) if doc else None

    @_storage_call
    async def find_users_by_email(self, email: str) -> List[User]:
        query = {"email": {"$regex": f"^\\s*{re.escape(email)}\\s*$", "$options": "i"}}
        cursor = self.users.find(query, session=self._s)
        return [_user_from_doc(doc) async for doc in cursor]

    @_storage_call
    async def find_users_by_phone(self, candidates: List[str]) -> List[User]:
        query = {"$or": [
            {"whatsapp_number": {"$in": candidates}},
            {"phone": {"$in": candidates}},
        ]}
        cursor = self.users.find(query, session=self._s)
        return [_user_from_doc(doc) async for doc in cursor]

    # ---------------------------------------------- payments

    @_storage_call
    async def insert_or_get_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        try:
            before = await self.payments.find_one_and_update(
                {"payment_id": payment.payment_id},
                {"$setOnInsert": payment.model_dump()},
                upsert=True,
                projection=_NO_ID,
                return_document=ReturnDocument.BEFORE,
                session=self._s,
            )
        except DuplicateKeyError:
            # Two concurrent upserts raced on the unique index; the other one won
            before = await self.payments.find_one(
                {"payment_id": payment.payment_id}, _NO_ID, session=self._s
            )
        if before is None:
            return payment, True
        return Payment.model_validate(before), False

    @_storage_call
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        doc = await self.payments.find_one({"payment_id": payment_id}, _NO_ID, session=self._s)
        return Payment.model_validate(doc) if doc else None

    @_storage_call
    async def save_payment(self, payment: Payment) -> Payment:
        await self.payments.replace_one(
            {"payment_id": payment.payment_id},
            payment.model_dump(),
            upsert=True,
            session=self._s,
        )
        return payment

    @_storage_call
    async def list_payments_for_user(self, user_id: str) -> List[Payment]:
        cursor = self.payments.find(
            {"resolved_user_id": user_id}, _NO_ID, session=self._s
        ).sort("created_at", -1)
        return [Payment.model_validate(doc) async for doc in cursor]

    _UNRESOLVED = {"needs_reconciliation": True, "resolved_user_id": None}

    @_storage_call
    async def list_unresolved_payments(self, limit: int = 50, skip: int = 0) -> List[Payment]:
        cursor = (
            self.payments.find(self._UNRESOLVED, _NO_ID, session=self._s)
            .sort("created_at", 1)
            .skip(skip)
            .limit(limit)
        )
        return [Payment.model_validate(doc) async for doc in cursor]

    @_storage_call
    async def count_unresolved_payments(self) -> int:
        return await self.payments.count_documents(self._UNRESOLVED, session=self._s)

    # ---------------------------------------------- subscriptions

    async def _find_subscription(self, query: dict) -> Optional[Subscription]:
        doc = await self.subscriptions.find_one(query, _NO_ID, session=self._s)
        return Subscription.model_validate(doc) if doc else None

    @_storage_call
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return await self._find_subscription({"id": subscription_id})

    @_storage_call
    async def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        return await self._find_subscription({"gateway_subscription_id": gateway_subscription_id})

    @_storage_call
    async def get_subscription_by_source_payment(self, payment_id: str) -> Optional[Subscription]:
        return await self._find_subscription({"source_payment_id": payment_id})

    @_storage_call
    async def list_subscriptions_for_user(self, user_id: str) -> List[Subscription]:
        cursor = self.subscriptions.find(
            {"user_id": user_id}, _NO_ID, session=self._s
        ).sort("created_at", -1)
        return [Subscription.model_validate(doc) async for doc in cursor]

    @_storage_call
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        # Sparse unique indexes skip missing keys, not nulls
        doc = subscription.model_dump()
        unset = {}
        for key in ("gateway_subscription_id", "source_payment_id"):
            if doc[key] is None:
                doc.pop(key)
                unset[key] = ""
        update: dict = {"$set": doc}
        if unset:
            update["$unset"] = unset
        await self.subscriptions.update_one(
            {"id": subscription.id}, update, upsert=True, session=self._s
        )
        return subscription

    # ---------------------------------------------- projection

    @_storage_call
    async def get_status(self, user_id: str) -> Optional[UserSubscriptionStatus]:
        doc = await self.statuses.find_one({"user_id": user_id}, _NO_ID, session=self._s)
        return UserSubscriptionStatus.model_validate(doc) if doc else None

    @_storage_call
    async def save_status(self, status: UserSubscriptionStatus) -> UserSubscriptionStatus:
        await self.statuses.replace_one(
            {"user_id": status.user_id},
            status.model_dump(),
            upsert=True,
            session=self._s,
        )
        return status

    # ---------------------------------------------- quarantine

    @_storage_call
    async def quarantine_event(self, raw_body: str, reason: str, details: Any = None) -> None:
        await self.quarantine.insert_one({
            "raw_body": raw_body,
            "reason": reason,
            "details": details,
            "received_at": utcnow(),
        })

    # ---------------------------------------------- transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self.use_transactions or _session.get() is not None:
            yield
            return

        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    token = _session.set(session)
                    try:
                        yield
                    finally:
                        _session.reset(token)
        except PyMongoError as e:
            # Commit or abort failed; the event will be redelivered
            logger.error(f"MongoDB transaction failed: {e}")
            raise TransientStorageFailure(details={"operation": "transaction"}) from e

    async def ping(self) -> bool:
        return await mongo.check_database_health()


class MongoUserLocks(UserLocks):
    """
    Lease-based lock documents: {_id: key, holder, expires_at}.

    A lease whose holder crashed is taken over once expires_at passes;
    the TTL index on expires_at clears leftovers.
    """

    def __init__(self, collection, lease_seconds: float = 30.0, poll_interval: float = 0.05):
        self.collection = collection
        self.lease = timedelta(seconds=lease_seconds)
        self.poll_interval = poll_interval

    async def _try_acquire(self, key: str, holder: str) -> bool:
        now = utcnow()
        try:
            await self.collection.insert_one({"_id": key, "holder": holder, "expires_at": now + self.lease})
            return True
        except DuplicateKeyError:
            stolen = await self.collection.find_one_and_update(
                {"_id": key, "expires_at": {"$lt": now}},
                {"$set": {"holder": holder, "expires_at": now + self.lease}},
            )
            if stolen is not None:
                logger.warning(f"Took over expired lock lease {key} from {stolen.get('holder')}")
                return True
            return False

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        holder = uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            while not await self._try_acquire(key, holder):
                if loop.time() >= deadline:
                    logger.warning(f"Lock wait for {key} exceeded {timeout}s")
                    raise LockTimeout(details={"key": key, "timeout_seconds": timeout})
                await asyncio.sleep(self.poll_interval)
        except PyMongoError as e:
            raise TransientStorageFailure(details={"operation": "acquire_lock"}) from e

        try:
            yield
        finally:
            try:
                await self.collection.delete_one({"_id": key, "holder": holder})
            except PyMongoError as e:
                # The lease expires on its own
                logger.error(f"Failed to release lock {key}: {e}")
