from typing import List, Optional

from fastapi import APIRouter, Depends, status

from paylink.api.dependencies import get_core
from paylink.api.models import CancelPaymentRequest, CreatePaymentRequest
from paylink.models import FeeTransaction, PaymentRequest, RequestStatus
from paylink.service import PaymentCore

router = APIRouter(prefix="/api/v1/requests", tags=["Requests"])


@router.post("", response_model=PaymentRequest, status_code=status.HTTP_201_CREATED)
async def create_payment_request(body: CreatePaymentRequest, core: PaymentCore = Depends(get_core)):
    """Create a payment link"""
    return await core.create_request(**body.model_dump())


@router.get("", response_model=List[PaymentRequest])
async def list_payment_requests(
    creator_wallet: Optional[str] = None,
    status: Optional[RequestStatus] = None,
    core: PaymentCore = Depends(get_core),
):
    return await core.list_requests(creator_wallet=creator_wallet, status=status)


@router.get("/{request_id}", response_model=PaymentRequest)
async def get_payment_request(request_id: str, core: PaymentCore = Depends(get_core)):
    """Payment request with lazy expiry applied"""
    return await core.get_request(request_id)


@router.get("/{request_id}/fees", response_model=List[FeeTransaction])
async def list_fee_transactions(request_id: str, core: PaymentCore = Depends(get_core)):
    return await core.fee_transactions(request_id)


@router.post("/{request_id}/cancel", response_model=PaymentRequest)
async def cancel_payment_request(
    request_id: str,
    body: CancelPaymentRequest,
    core: PaymentCore = Depends(get_core),
):
    return await core.cancel_request(request_id, requested_by=body.requested_by, signature=body.signature)
