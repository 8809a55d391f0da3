from fastapi import APIRouter, Depends

from paylink import __version__
from paylink.api.dependencies import get_core
from paylink.chains import supported_network_list
from paylink.models import utcnow
from paylink.service import PaymentCore

router = APIRouter(tags=["General"])


@router.get("/", tags=["Health"])
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "PayLink Core",
        "version": __version__,
        "status": "operational",
    }


@router.get("/health", tags=["Health"])
async def health_check(core: PaymentCore = Depends(get_core)):
    """Health check endpoint; reports the price cache and active fee record"""
    config = core.fee_config.current()
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "fee_config": {
            "reward_fee_amount": str(config.reward_fee_amount),
            "reward_token": config.reward_token_symbol,
            "creator_reward_fraction": str(config.creator_reward_fraction),
        },
        "prices": core.oracle.cache_info(),
    }


@router.get("/api/v1/networks", tags=["General"])
async def list_networks():
    return {"networks": supported_network_list()}
