"""
reconciler/schemas/webhook.py

Purpose: Razorpay webhook payload schemas and parser

- Validates incoming gateway events before any component sees them
- Replaces the free-form notes map with an explicit optional structure
- Normalizes the envelope and bare-entity formats into GatewayEvent
"""

from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator

from reconciler.core.exceptions import MalformedPayload
from utils.time_utils import utcnow


PaymentEntityStatus = Literal["created", "authorized", "captured", "refunded", "failed"]


class GatewayNotes(BaseModel):
    """
    The gateway's notes bag. Known keys are typed; anything else is kept
    verbatim for the ledger but never read by the pipeline.
    """
    model_config = ConfigDict(extra="allow")

    user_id: Optional[str] = None
    plan_type: Optional[str] = None
    plan_variant: Optional[str] = None
    billing_period: Optional[str] = None
    subscription_type: Optional[str] = None
    source: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v):
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError("notes.user_id must be a string or integer")
        v = str(v).strip()
        return v or None

    @field_validator("plan_type", "plan_variant", "billing_period", "subscription_type", mode="before")
    @classmethod
    def lower_strings(cls, v):
        if v is None:
            return None
        return str(v).strip().lower() or None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def _coerce_notes(v):
    # Razorpay serializes an empty notes map as []
    if v is None or v == []:
        return {}
    return v


Notes = Annotated[GatewayNotes, BeforeValidator(_coerce_notes)]


class PaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    amount: int = Field(default=0, ge=0)
    currency: str = "INR"
    status: PaymentEntityStatus = "created"
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    description: Optional[str] = None
    error_description: Optional[str] = None
    notes: Notes = Field(default_factory=GatewayNotes)
    created_at: Optional[int] = None

    @field_validator("id")
    @classmethod
    def strip_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("payment id must not be blank")
        return v

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        return v.strip().upper()


class SubscriptionEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    plan_id: Optional[str] = None
    status: Optional[str] = None
    current_start: Optional[int] = None
    current_end: Optional[int] = None
    charge_at: Optional[int] = None
    total_count: Optional[int] = None
    paid_count: Optional[int] = None
    remaining_count: Optional[int] = None
    notes: Notes = Field(default_factory=GatewayNotes)


class _EntityWrapper(BaseModel):
    entity: Dict[str, Any]


class _EnvelopePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment: Optional[_EntityWrapper] = None
    subscription: Optional[_EntityWrapper] = None


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1)
    payload: _EnvelopePayload = Field(default_factory=_EnvelopePayload)


class GatewayEvent(BaseModel):
    """
    Normalized gateway event handed to the reconciliation pipeline.
    """
    event: str
    payment: Optional[PaymentEntity] = None
    subscription: Optional[SubscriptionEntity] = None
    received_at: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "event": "payment.captured",
                "payment": {
                    "id": "pay_R6yeWtx4jUG6dS",
                    "amount": 45100,
                    "currency": "INR",
                    "status": "captured",
                    "method": "upi",
                    "email": "void@razorpay.com",
                    "contact": "+91 8973 297600",
                    "notes": {"user_id": "44885683"}
                }
            }
        }

    @property
    def payment_id(self) -> Optional[str]:
        return self.payment.id if self.payment else None

    @property
    def gateway_subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription.id
        if self.payment:
            return self.payment.subscription_id
        return None

    @property
    def notes(self) -> GatewayNotes:
        """
        Payment notes, falling back to subscription notes key by key.
        """
        merged: Dict[str, Any] = {}
        if self.subscription:
            merged.update(self.subscription.notes.as_dict())
        if self.payment:
            merged.update(self.payment.notes.as_dict())
        return GatewayNotes(**merged)


def parse_webhook_payload(payload: Any) -> GatewayEvent:
    """
    Parses an authenticated webhook body into a GatewayEvent.

    Razorpay envelope:
    {
        "event": "payment.captured",
        "payload": {
            "payment": {"entity": {"id": "pay_...", "amount": 45100, ...}},
            "subscription": {"entity": {"id": "sub_...", ...}}
        }
    }

    A bare payment entity ({"id": "pay_...", "status": "captured", ...}) is
    accepted too; its event name is derived from its status.

    Raises:
        MalformedPayload: if the body matches neither shape
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook body must be a JSON object")

    try:
        if "event" not in payload and "id" in payload:
            payment = PaymentEntity.model_validate(payload)
            return GatewayEvent(event=f"payment.{payment.status}", payment=payment)

        envelope = WebhookEnvelope.model_validate(payload)
        payment = None
        subscription = None
        if envelope.payload.payment is not None:
            payment = PaymentEntity.model_validate(envelope.payload.payment.entity)
        if envelope.payload.subscription is not None:
            subscription = SubscriptionEntity.model_validate(envelope.payload.subscription.entity)

    except ValidationError as e:
        raise MalformedPayload(
            "Webhook payload failed validation",
            details=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        ) from e

    if payment is None and subscription is None:
        raise MalformedPayload(f"Event {envelope.event} carries no payment or subscription entity")

    return GatewayEvent(event=envelope.event.strip().lower(), payment=payment, subscription=subscription)
