"""
reconciler/models/subscription.py

Purpose: Subscription and projected status rows

- Subscription: billing relationship between a user and a plan
- SubscriptionStatus: the single per-user projection read by the application
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field

from utils.time_utils import utcnow


class PlanType(str, Enum):
    PREMIUM = "premium"
    SUPER_USER = "super_user"


class SubscriptionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    HALTED = "halted"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Subscription(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=lambda: f"sub_{uuid4().hex[:16]}")
    user_id: str
    plan_type: PlanType
    plan_variant: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    gateway_plan_id: Optional[str] = None
    source_payment_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.CREATED

    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: int = 0
    remaining_count: Optional[int] = None

    # Super-user question credits carried by this subscription
    questions_granted: int = 0
    questions_used: int = 0

    amount: int = 0
    currency: str = "INR"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UserSubscriptionStatus(BaseModel):
    """
    Exactly one row per user. Recomputed by the status projector only.
    """
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    is_premium: bool = False
    is_super_user: bool = False
    premium_expires_at: Optional[datetime] = None
    super_user_expires_at: Optional[datetime] = None
    current_premium_subscription_id: Optional[str] = None
    current_super_user_subscription_id: Optional[str] = None
    total_spent: int = 0
    questions_remaining: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    def projection_key(self) -> tuple:
        """Fields that must agree between two projections of the same ledger."""
        return (
            self.is_premium,
            self.is_super_user,
            self.premium_expires_at,
            self.super_user_expires_at,
            self.current_premium_subscription_id,
            self.current_super_user_subscription_id,
            self.total_spent,
            self.questions_remaining,
        )
