from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from paylink.actions import ActionDispatcher
from paylink.api.dependencies import get_core, get_dispatcher
from paylink.api.errors import http_status_for
from paylink.api.models import QuoteRequest, VerifyRequest
from paylink.models import QuoteResult
from paylink.service import PaymentCore

router = APIRouter(prefix="/api/v1", tags=["Payments"])


@router.post("/quote", response_model=QuoteResult)
async def quote(body: QuoteRequest, core: PaymentCore = Depends(get_core)):
    """
    Fee quote and the three transfers the payer must execute.

    Repeated calls for the same payer return the locked quote.
    """
    return await core.quote(body.request_id, body.payer_address, body.payer_agent_id)


@router.post("/verify")
async def verify(body: VerifyRequest, core: PaymentCore = Depends(get_core)):
    """Verify settlement transactions; the verdict body is returned for every outcome"""
    verdict = await core.verify(
        body.request_id,
        body.tx_hash,
        fee_tx_hash=body.fee_tx_hash,
        creator_reward_tx_hash=body.creator_reward_tx_hash,
        payer_agent_id=body.payer_agent_id,
    )
    status_code = 200 if verdict.paid else http_status_for(verdict.reason, verdict.retryable)
    return JSONResponse(status_code=status_code, content=verdict.model_dump(mode="json"))


@router.post("/actions")
async def dispatch_action(
    body: Dict[str, Any],
    dispatcher: ActionDispatcher = Depends(get_dispatcher),
):
    """Structured action entry point for agents"""
    result = await dispatcher.dispatch(body)
    return result.model_dump(mode="json")
