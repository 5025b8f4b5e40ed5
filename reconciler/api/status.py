"""
reconciler/api/status.py

Purpose: Status read API

- The single answer to "is this user premium right now?"
- ?verify=true recomputes from the ledger and repairs drift
"""

from fastapi import APIRouter, Depends, Query

from reconciler.api.deps import get_reconciliation_service
from reconciler.schemas.response import StatusResponse
from reconciler.services.reconciliation_service import ReconciliationService

router = APIRouter()


@router.get("/users/{user_id}/subscription-status", response_model=StatusResponse)
async def get_subscription_status(
    user_id: str,
    verify: bool = Query(False, description="Recompute from the ledger before answering"),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    status = await service.get_status(user_id, verify=verify)
    return StatusResponse(
        user_id=status.user_id,
        is_premium=status.is_premium,
        is_super_user=status.is_super_user,
        premium_expires_at=status.premium_expires_at,
        super_user_expires_at=status.super_user_expires_at,
        questions_remaining=status.questions_remaining,
    )
