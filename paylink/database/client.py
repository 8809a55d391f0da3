"""
Supabase database client for PayLink
Persistent RecordStore for payment requests, fee transactions and the fee record
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from supabase import Client, create_client

from paylink.errors import TransactionAlreadyUsed
from paylink.fees.config import FeeConfig
from paylink.models import (
    FeeQuote,
    FeeTransaction,
    FeeTransactionStatus,
    PaymentRequest,
    RequestStatus,
    utcnow,
)

logger = structlog.get_logger()

UNIQUE_VIOLATION = "23505"


def _dec(value: Any) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _is_unique_violation(error: Exception) -> bool:
    return getattr(error, "code", None) == UNIQUE_VIOLATION


def request_to_row(request: PaymentRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "token": request.token,
        "token_decimals": request.token_decimals,
        "amount": str(request.amount),
        "receiver": request.receiver,
        "payer": request.payer,
        "description": request.description,
        "network": request.network,
        "status": request.status.value,
        "created_at": _ts(request.created_at),
        "expires_at": _ts(request.expires_at),
        "tx_hash": request.tx_hash,
        "fee_tx_hash": request.fee_tx_hash,
        "creator_reward_tx_hash": request.creator_reward_tx_hash,
        "paid_at": _ts(request.paid_at),
        "creator_wallet": request.creator_wallet,
        "creator_agent_id": request.creator_agent_id,
        "payer_agent_id": request.payer_agent_id,
    }


def row_to_request(row: Dict[str, Any]) -> PaymentRequest:
    data = dict(row)
    data["amount"] = _dec(row["amount"])
    return PaymentRequest.model_validate(
        {k: v for k, v in data.items() if k in PaymentRequest.model_fields and v is not None}
    )


def fee_transaction_to_row(record: FeeTransaction) -> Dict[str, Any]:
    quote = record.quote
    return {
        "id": record.id,
        "payment_request_id": record.payment_request_id,
        "payer_wallet": record.payer_wallet,
        "payer_agent_id": record.payer_agent_id,
        "creator_wallet": record.creator_wallet,
        "creator_agent_id": record.creator_agent_id,
        "fee_token": quote.fee_token,
        "fee_token_address": quote.fee_token_address,
        "fee_token_decimals": quote.fee_token_decimals,
        "paid_in_reward_token": quote.paid_in_reward_token,
        "fee_total": str(quote.fee_total),
        "platform_share": str(quote.platform_share),
        "creator_reward": str(quote.creator_reward),
        "reference_price_usd": str(quote.reference_price_usd),
        "price_stale": quote.price_stale,
        "payer_reward_balance": str(quote.payer_reward_balance),
        "payment_amount": str(record.payment_amount),
        "payment_token": record.payment_token,
        "treasury_wallet": record.treasury_wallet,
        "payment_tx_hash": record.payment_tx_hash,
        "platform_fee_tx_hash": record.platform_fee_tx_hash,
        "creator_reward_tx_hash": record.creator_reward_tx_hash,
        "status": record.status.value,
        "created_at": _ts(record.created_at),
        "updated_at": _ts(record.updated_at),
    }


def row_to_fee_transaction(row: Dict[str, Any]) -> FeeTransaction:
    quote = FeeQuote(
        fee_token=row["fee_token"],
        fee_token_address=row.get("fee_token_address"),
        fee_token_decimals=row["fee_token_decimals"],
        paid_in_reward_token=row["paid_in_reward_token"],
        fee_total=_dec(row["fee_total"]),
        platform_share=_dec(row["platform_share"]),
        creator_reward=_dec(row["creator_reward"]),
        reference_price_usd=_dec(row["reference_price_usd"]),
        price_stale=row.get("price_stale") or False,
        payer_reward_balance=_dec(row.get("payer_reward_balance")) or Decimal("0"),
    )
    return FeeTransaction(
        id=row["id"],
        payment_request_id=row["payment_request_id"],
        payer_wallet=row["payer_wallet"],
        payer_agent_id=row.get("payer_agent_id"),
        creator_wallet=row["creator_wallet"],
        creator_agent_id=row.get("creator_agent_id"),
        quote=quote,
        payment_amount=_dec(row["payment_amount"]),
        payment_token=row["payment_token"],
        treasury_wallet=row["treasury_wallet"],
        payment_tx_hash=row.get("payment_tx_hash"),
        platform_fee_tx_hash=row.get("platform_fee_tx_hash"),
        creator_reward_tx_hash=row.get("creator_reward_tx_hash"),
        status=FeeTransactionStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
    )


class SupabaseRecordStore:
    """
    RecordStore backed by Supabase (PostgREST)

    Conditional writes are expressed as ``update ... where status = expected``;
    PostgREST returns the updated rows, so an empty result means the
    compare-and-swap lost. Settlement spans several tables and goes through
    the ``settle_payment`` function so it commits as one transaction.
    """

    def __init__(self, supabase_url: str, supabase_key: str, defaults: FeeConfig):
        """Initialize Supabase client"""
        self.client: Client = create_client(supabase_url, supabase_key)
        self.defaults = defaults

    # ===== PAYMENT REQUESTS =====

    async def create_request(self, request: PaymentRequest) -> PaymentRequest:
        result = self.client.table("payment_requests").insert(request_to_row(request)).execute()
        return row_to_request(result.data[0])

    async def get_request(self, request_id: str) -> Optional[PaymentRequest]:
        result = self.client.table("payment_requests").select("*").eq("id", request_id).execute()
        return row_to_request(result.data[0]) if result.data else None

    async def list_requests(
        self,
        creator_wallet: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[PaymentRequest]:
        query = self.client.table("payment_requests").select("*")
        if creator_wallet:
            query = query.ilike("creator_wallet", creator_wallet)
        if status:
            query = query.eq("status", status.value)
        result = query.order("created_at", desc=True).execute()
        return [row_to_request(row) for row in result.data]

    async def find_request_by_tx_hash(self, tx_hash: str) -> Optional[PaymentRequest]:
        result = (
            self.client.table("payment_requests")
            .select("*")
            .or_(f"tx_hash.ilike.{tx_hash},fee_tx_hash.ilike.{tx_hash},creator_reward_tx_hash.ilike.{tx_hash}")
            .limit(1)
            .execute()
        )
        return row_to_request(result.data[0]) if result.data else None

    async def transition_request(
        self, request_id: str, expected: RequestStatus, new: RequestStatus
    ) -> Optional[PaymentRequest]:
        result = (
            self.client.table("payment_requests")
            .update({"status": new.value})
            .eq("id", request_id)
            .eq("status", expected.value)
            .execute()
        )
        return row_to_request(result.data[0]) if result.data else None

    async def settle(
        self,
        request_id: str,
        tx_hash: str,
        fee_tx_hash: str,
        creator_reward_tx_hash: str,
        fee_transaction: FeeTransaction,
        paid_at: datetime,
        payer_agent_id: Optional[str] = None,
    ) -> Optional[PaymentRequest]:
        """
        Atomically settle a request
        Uses Supabase RPC to call the settle_payment PostgreSQL function, which
        runs the compare-and-swap, claims the tx hashes and writes the fee
        records in one transaction
        """
        try:
            result = self.client.rpc(
                "settle_payment",
                {
                    "p_request_id": request_id,
                    "p_tx_hash": tx_hash,
                    "p_fee_tx_hash": fee_tx_hash,
                    "p_creator_reward_tx_hash": creator_reward_tx_hash,
                    "p_fee_transaction": fee_transaction_to_row(fee_transaction),
                    "p_paid_at": paid_at.isoformat(),
                    "p_payer_agent_id": payer_agent_id,
                }
            ).execute()
        except Exception as e:
            # settlement_tx_hashes primary key: a hash already settled another request
            if _is_unique_violation(e):
                raise TransactionAlreadyUsed(
                    "Transaction already settled another request",
                    details={"tx_hashes": sorted({tx_hash, fee_tx_hash, creator_reward_tx_hash})},
                ) from e
            raise

        return row_to_request(result.data[0]) if result.data else None

    async def list_pending_expired(self, now: datetime) -> List[PaymentRequest]:
        result = (
            self.client.table("payment_requests")
            .select("*")
            .eq("status", RequestStatus.PENDING.value)
            .lt("expires_at", now.isoformat())
            .execute()
        )
        return [row_to_request(row) for row in result.data]

    # ===== FEE TRANSACTIONS =====

    async def reserve_fee_transaction(self, record: FeeTransaction) -> Tuple[FeeTransaction, bool]:
        existing = await self.find_pending_fee_transaction(record.payment_request_id, record.payer_wallet)
        if existing is not None:
            return existing, False
        try:
            result = self.client.table("fee_transactions").insert(fee_transaction_to_row(record)).execute()
        except Exception as e:
            # Partial unique index on (payment_request_id, payer_wallet) for PENDING rows
            if not _is_unique_violation(e):
                raise
            existing = await self.find_pending_fee_transaction(record.payment_request_id, record.payer_wallet)
            if existing is None:
                raise
            return existing, False
        return row_to_fee_transaction(result.data[0]), True

    async def get_fee_transaction(self, fee_transaction_id: str) -> Optional[FeeTransaction]:
        result = self.client.table("fee_transactions").select("*").eq("id", fee_transaction_id).execute()
        return row_to_fee_transaction(result.data[0]) if result.data else None

    async def find_pending_fee_transaction(
        self, request_id: str, payer_wallet: str
    ) -> Optional[FeeTransaction]:
        result = (
            self.client.table("fee_transactions")
            .select("*")
            .eq("payment_request_id", request_id)
            .ilike("payer_wallet", payer_wallet)
            .eq("status", FeeTransactionStatus.PENDING.value)
            .limit(1)
            .execute()
        )
        return row_to_fee_transaction(result.data[0]) if result.data else None

    async def list_fee_transactions(self, request_id: str) -> List[FeeTransaction]:
        result = (
            self.client.table("fee_transactions")
            .select("*")
            .eq("payment_request_id", request_id)
            .order("created_at")
            .execute()
        )
        return [row_to_fee_transaction(row) for row in result.data]

    async def fail_pending_fee_transactions(self, request_id: str) -> int:
        result = self.client.table("fee_transactions").update({
            "status": FeeTransactionStatus.FAILED.value,
            "updated_at": utcnow().isoformat(),
        }).eq("payment_request_id", request_id).eq("status", FeeTransactionStatus.PENDING.value).execute()
        return len(result.data)

    # ===== FEE CONFIG =====

    async def load_fee_config(self) -> Optional[FeeConfig]:
        result = self.client.table("fee_config").select("*").eq("id", "default").execute()
        if not result.data:
            return None
        row = result.data[0]
        overrides = {
            "reward_fee_amount": _dec(row.get("reward_fee_amount")),
            "platform_share_fraction": _dec(row.get("platform_share_fraction")),
            "creator_reward_fraction": _dec(row.get("creator_reward_fraction")),
            "reward_token_symbol": row.get("reward_token_symbol"),
            "reward_token_contract": row.get("reward_token_contract"),
            "treasury_wallet": row.get("treasury_wallet"),
            "price_cache_ttl_seconds": row.get("price_cache_ttl_sec"),
            "fallback_reward_price_usd": _dec(row.get("fallback_reward_price_usd")),
            "updated_at": row.get("updated_at"),
        }
        return FeeConfig.model_validate({
            **self.defaults.model_dump(),
            **{k: v for k, v in overrides.items() if v is not None},
        })

    async def save_fee_config(self, config: FeeConfig) -> FeeConfig:
        self.client.table("fee_config").upsert({
            "id": config.id,
            "reward_fee_amount": str(config.reward_fee_amount),
            "platform_share_fraction": str(config.platform_share_fraction),
            "creator_reward_fraction": str(config.creator_reward_fraction),
            "reward_token_symbol": config.reward_token_symbol,
            "reward_token_contract": config.reward_token_contract,
            "treasury_wallet": config.treasury_wallet,
            "price_cache_ttl_sec": config.price_cache_ttl_seconds,
            "fallback_reward_price_usd": str(config.fallback_reward_price_usd),
            "updated_at": utcnow().isoformat(),
        }).execute()
        return config
