"""
reconciler/api/history.py

Purpose: Read-only ledger views

- A user's payments and subscriptions, newest first
- The plan catalog
"""

from typing import List

from fastapi import APIRouter, Depends

from reconciler.api.deps import get_reconciliation_service
from reconciler.models.payment import Payment
from reconciler.models.subscription import Subscription
from reconciler.services.plan_catalog import list_plans
from reconciler.services.reconciliation_service import ReconciliationService

router = APIRouter()


@router.get("/users/{user_id}/payments", response_model=List[Payment])
async def get_user_payments(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return await service.list_payments(user_id)


@router.get("/users/{user_id}/subscriptions", response_model=List[Subscription])
async def get_user_subscriptions(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return await service.list_subscriptions(user_id)


@router.get("/plans")
async def get_plans():
    return {
        "plans": [
            {
                "plan_type": plan.plan_type,
                "variant": plan.variant,
                "plan_id": plan.plan_id,
                "name": plan.name,
                "amount": plan.amount,
                "display_price": plan.display_price,
                "duration_months": plan.duration_months,
                "questions": plan.questions,
            }
            for plan in list_plans()
        ]
    }
