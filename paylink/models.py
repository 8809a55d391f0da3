"""
PayLink Core Data Models
Shared models for the ledger, fee engine and settlement verifier
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paylink.chains import resolve_network
from paylink.errors import PaymentError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    """Stable ``REQ-`` prefix plus a random upper-case suffix"""
    return "REQ-" + uuid.uuid4().hex[:8].upper()


def new_fee_transaction_id() -> str:
    return "FEE-" + uuid.uuid4().hex[:9].upper()


class RequestStatus(str, Enum):
    """Payment request lifecycle states"""
    PENDING = "PENDING"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class FeeTransactionStatus(str, Enum):
    """Fee record lifecycle states"""
    PENDING = "PENDING"
    COLLECTED = "COLLECTED"
    FAILED = "FAILED"


class VerificationStatus(str, Enum):
    PAID = "PAID"
    REJECTED = "REJECTED"


class PaymentRequest(BaseModel):
    """A payment link created by a human or an agent"""
    id: str = Field(default_factory=new_request_id)
    amount: Decimal = Field(description="Amount in token units, strictly positive")
    token: str = Field(description="USDC, USDT, ETH, LCX or an ERC-20 address (Pro mode)")
    network: str = Field(default="sepolia", description="Canonical chain name")
    receiver: str = Field(description="Creator wallet receiving the payment")
    token_decimals: Optional[int] = Field(default=None, description="Decimals for Pro-mode tokens")
    description: str = ""
    payer: Optional[str] = None
    creator_agent_id: Optional[str] = None
    creator_wallet: Optional[str] = None
    payer_agent_id: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    fee_tx_hash: Optional[str] = None
    creator_reward_tx_hash: Optional[str] = None
    paid_at: Optional[datetime] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v <= 0:
            raise ValueError("amount must be a finite, strictly positive decimal")
        return v

    @field_validator("network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        canonical = resolve_network(v)
        if canonical is None:
            raise ValueError(f"unsupported network: {v}")
        return canonical

    @property
    def created_by_agent(self) -> bool:
        return self.creator_agent_id is not None

    def is_past_expiry(self, at: datetime) -> bool:
        return self.expires_at is not None and at > self.expires_at

    def effective_status(self, now: datetime) -> RequestStatus:
        """Status with lazy expiry applied to PENDING requests"""
        if self.status is RequestStatus.PENDING and self.is_past_expiry(now):
            return RequestStatus.EXPIRED
        return self.status


class FeeQuote(BaseModel):
    """Fee owed for one pay attempt, locked at quote time"""

    model_config = ConfigDict(frozen=True)

    fee_token: str
    fee_token_address: Optional[str] = None
    fee_token_decimals: int
    paid_in_reward_token: bool
    fee_total: Decimal
    platform_share: Decimal
    creator_reward: Decimal
    reference_price_usd: Decimal
    price_stale: bool = False
    payer_reward_balance: Decimal = Decimal("0")


class Transfer(BaseModel):
    """One on-chain transfer the payer must execute"""

    model_config = ConfigDict(frozen=True)

    description: str
    token: str
    token_address: Optional[str] = Field(default=None, description="None for the native asset")
    decimals: int
    amount: Decimal
    to: str

    @property
    def base_units(self) -> int:
        return int(self.amount.scaleb(self.decimals))


class InstructionSet(BaseModel):
    """Ordered transfers satisfying a payment request plus its fee"""

    model_config = ConfigDict(frozen=True)

    request_id: str
    network: str
    fee_token: str
    transfers: List[Transfer]
    totals_by_token: Dict[str, Decimal]


class FeeTransaction(BaseModel):
    """Append-only record of the fee reserved for, then collected from, a payer"""
    id: str = Field(default_factory=new_fee_transaction_id)
    payment_request_id: str
    payer_wallet: str
    payer_agent_id: Optional[str] = None
    creator_wallet: str
    creator_agent_id: Optional[str] = None
    quote: FeeQuote
    payment_amount: Decimal
    payment_token: str
    treasury_wallet: str
    payment_tx_hash: Optional[str] = None
    platform_fee_tx_hash: Optional[str] = None
    creator_reward_tx_hash: Optional[str] = None
    status: FeeTransactionStatus = Field(default=FeeTransactionStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class QuoteResult(BaseModel):
    """Inbound ``quote`` response"""
    request_id: str
    fee_transaction_id: str
    reused: bool = Field(default=False, description="True when an earlier locked quote was returned")
    quote: FeeQuote
    instructions: InstructionSet


class VerificationResult(BaseModel):
    """Verdict for one ``verify`` call"""
    status: VerificationStatus
    reason: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
    request: Optional[PaymentRequest] = None
    fee_transaction: Optional[FeeTransaction] = None

    @property
    def paid(self) -> bool:
        return self.status is VerificationStatus.PAID

    @classmethod
    def rejected(cls, error: PaymentError, request: Optional[PaymentRequest] = None) -> "VerificationResult":
        return cls(
            status=VerificationStatus.REJECTED,
            reason=error.code,
            message=error.message,
            retryable=error.retryable,
            details=error.details,
            request=request,
        )
