"""
reconciler/api/reconciliation.py

Purpose: Manual reconciliation surface for operators

- Lists payments the resolver couldn't attach to a user
- Assigns a payment to a user and re-runs the pipeline for it
"""

from fastapi import APIRouter, Depends, Query

from reconciler.api.deps import get_reconciliation_service, require_admin_key
from reconciler.models.payment import Payment
from reconciler.schemas.response import ManualResolutionRequest, UnresolvedPaymentsResponse
from reconciler.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin_key)])


@router.get("/payments/unresolved", response_model=UnresolvedPaymentsResponse)
async def list_unresolved_payments(
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    count, payments = await service.list_unresolved(limit=limit, skip=skip)
    return UnresolvedPaymentsResponse(count=count, payments=payments)


@router.post("/payments/{payment_id}/resolve", response_model=Payment)
async def resolve_payment(
    payment_id: str,
    body: ManualResolutionRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return await service.resolve_manually(payment_id, body.user_id, operator=body.operator)
