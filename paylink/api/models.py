"""
Request bodies for the PayLink HTTP API
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class CreatePaymentRequest(BaseModel):
    """Create a payment link"""
    amount: Decimal = Field(description="Amount in token units")
    token: str = Field(description="USDC, USDT, ETH, LCX or an ERC-20 address")
    receiver: str = Field(description="Wallet receiving the payment")
    network: str = Field(default="sepolia")
    description: str = ""
    payer: Optional[str] = Field(default=None, description="Restrict payment to this wallet")
    expires_in_seconds: Optional[int] = Field(default=None, gt=0)
    token_decimals: Optional[int] = Field(default=None, ge=0, le=36)
    creator_agent_id: Optional[str] = None
    creator_wallet: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "amount": "10",
                "token": "USDC",
                "receiver": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
                "network": "sepolia",
                "description": "API credits",
                "expires_in_seconds": 3600,
            }
        }


class CancelPaymentRequest(BaseModel):
    requested_by: Optional[str] = Field(default=None, description="Wallet of the creator cancelling the link")
    signature: Optional[str] = Field(
        default=None,
        description="personal_sign signature over \"Cancel PayLink request <id>\" by the creator wallet",
    )

    @model_validator(mode="after")
    def require_creator(self) -> "CancelPaymentRequest":
        if not self.requested_by and not self.signature:
            raise ValueError("requested_by or signature is required")
        return self


class QuoteRequest(BaseModel):
    request_id: str
    payer_address: str
    payer_agent_id: Optional[str] = None


class VerifyRequest(BaseModel):
    request_id: str
    tx_hash: str
    fee_tx_hash: Optional[str] = Field(default=None, description="Defaults to tx_hash")
    creator_reward_tx_hash: Optional[str] = Field(default=None, description="Defaults to tx_hash")
    payer_agent_id: Optional[str] = None
