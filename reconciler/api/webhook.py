"""
reconciler/api/webhook.py

Purpose: Razorpay webhook endpoint

- Verifies the HMAC-SHA256 signature of the raw body before anything else
- Parses the event; malformed payloads are quarantined and acknowledged
- Hands the event to the reconciliation pipeline
- 200 for every handled outcome, 503 (with Retry-After) for retryable failures
"""

import hashlib
import hmac
import json
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from reconciler.api.deps import get_reconciliation_service, get_webhook_secret
from reconciler.core.exceptions import InvalidSignature, MalformedPayload
from reconciler.core.logging import get_logger
from reconciler.schemas.response import WebhookAck
from reconciler.schemas.webhook import parse_webhook_payload
from reconciler.services.reconciliation_service import ReconciliationService

logger = get_logger(__name__)
router = APIRouter()


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Raises:
        InvalidSignature: missing secret, missing header or mismatch
    """
    if not secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise InvalidSignature("Webhook secret not configured")
    if not signature:
        raise InvalidSignature("Missing webhook signature")
    if not hmac.compare_digest(compute_signature(body, secret), signature.strip()):
        raise InvalidSignature()


@router.post("/razorpay/webhook", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    secret: Optional[str] = Depends(get_webhook_secret),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Razorpay webhook receiver.

    Accepts the standard envelope
    ({"event": ..., "payload": {"payment": {"entity": ...}, "subscription": {"entity": ...}}})
    or a bare payment entity.
    """
    body = await request.body()

    try:
        verify_signature(body, x_razorpay_signature, secret)
    except InvalidSignature as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise

    try:
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise MalformedPayload("Webhook body is not valid JSON") from e
        event = parse_webhook_payload(payload)
    except MalformedPayload as e:
        await service.quarantine(body.decode("utf-8", errors="replace"), e.message, e.details)
        return WebhookAck(status="quarantined", message=e.message)

    logger.info(f"📥 Razorpay {event.event} for {event.payment_id or event.gateway_subscription_id}")

    result = await service.process_event(event)
    return WebhookAck(**asdict(result))
