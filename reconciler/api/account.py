"""
reconciler/api/account.py

Purpose: Actions the application takes on a user's behalf

- Cancel a subscription (the paid-up period stays usable)
- Spend a super-user question credit
"""

from fastapi import APIRouter, Depends

from reconciler.api.deps import get_reconciliation_service, require_admin_key
from reconciler.models.subscription import Subscription
from reconciler.schemas.response import StatusResponse
from reconciler.services.reconciliation_service import ReconciliationService

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("/users/{user_id}/subscriptions/{subscription_id}/cancel", response_model=Subscription)
async def cancel_subscription(
    user_id: str,
    subscription_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return await service.cancel_subscription(user_id, subscription_id)


@router.post("/users/{user_id}/questions/consume", response_model=StatusResponse)
async def consume_question(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Call once per question asked. 402 when a super user has run out.
    """
    status = await service.consume_question(user_id)
    return StatusResponse(
        user_id=status.user_id,
        is_premium=status.is_premium,
        is_super_user=status.is_super_user,
        premium_expires_at=status.premium_expires_at,
        super_user_expires_at=status.super_user_expires_at,
        questions_remaining=status.questions_remaining,
    )
