from datetime import datetime
from pydantic import BaseModel
from typing import Optional, Any, List

from reconciler.models.payment import Payment


class ErrorResponse(BaseModel):
    """
    Standard error response structure.
    """
    error: str
    code: str
    details: Optional[Any] = None


class WebhookAck(BaseModel):
    """
    Body returned to the gateway for every acknowledged delivery.
    """
    status: str
    payment_id: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None


class StatusResponse(BaseModel):
    """
    The only view of a user's entitlement the rest of the application reads.
    """
    user_id: str
    is_premium: bool
    is_super_user: bool
    premium_expires_at: Optional[datetime] = None
    super_user_expires_at: Optional[datetime] = None
    questions_remaining: int = 0


class ManualResolutionRequest(BaseModel):
    user_id: str
    operator: Optional[str] = None


class UnresolvedPaymentsResponse(BaseModel):
    count: int
    payments: List[Payment]
