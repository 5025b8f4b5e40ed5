"""
reconciler/models/payment.py

Purpose: Payment ledger row

- One row per gateway payment attempt, keyed by the gateway payment id
- Immutable once written except for status and identity resolution fields
- Never deleted
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from utils.time_utils import utcnow


class PaymentStatus(str, Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"


class ResolutionMethod(str, Enum):
    NOTES_USER_ID = "notes_user_id"
    SUBSCRIPTION_OWNER = "subscription_owner"
    EMAIL = "email"
    CONTACT = "contact"
    MANUAL = "manual"


class Payment(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    payment_id: str
    order_id: Optional[str] = None
    amount: int = 0
    currency: str = "INR"
    status: PaymentStatus = PaymentStatus.CREATED
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    description: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)
    gateway_subscription_id: Optional[str] = None

    resolved_user_id: Optional[str] = None
    resolution_method: Optional[ResolutionMethod] = None
    needs_reconciliation: bool = False
    failure_reason: Optional[str] = None
    applied_events: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    captured_at: Optional[datetime] = None
