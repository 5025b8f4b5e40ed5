"""
reconciler/api/deps.py

Purpose: Request dependencies shared by the routers

- The process-wide ReconciliationService built at startup
- Webhook secret lookup
- X-Admin-Key check for the reconciliation surface
"""

import hmac
from typing import Optional

from fastapi import Header, Request

from reconciler.core.config import settings
from reconciler.core.exceptions import AuthenticationError, TransientStorageFailure
from reconciler.services.reconciliation_service import ReconciliationService


def get_reconciliation_service(request: Request) -> ReconciliationService:
    service = getattr(request.app.state, "reconciliation_service", None)
    if service is None:
        # Lifespan hasn't finished (or failed) connecting storage
        raise TransientStorageFailure("Reconciliation service not initialized")
    return service


def get_webhook_secret() -> Optional[str]:
    return settings.RAZORPAY_WEBHOOK_SECRET


async def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> None:
    """
    Enforced only when ADMIN_API_KEY is configured (always, in production).
    """
    expected = settings.ADMIN_API_KEY
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise AuthenticationError("Invalid or missing admin key")
