"""
Record store for payment requests, fee transactions and the fee record

``RecordStore`` is the persistence contract the ledger relies on. The two
operations that carry concurrency guarantees are:

- ``transition_request``: compare-and-swap on ``PaymentRequest.status``
- ``settle``: compare-and-swap PENDING → PAID plus the fee-record updates,
  rejecting tx hashes already bound to another settled request. The winning
  fee record is written COLLECTED, inserted if it was never reserved; all of
  it commits together or not at all

``InMemoryRecordStore`` provides both with a single asyncio lock held only for
the write itself; the persistent implementation lives in
``paylink.database.client``.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from paylink.chains import same_address
from paylink.errors import TransactionAlreadyUsed
from paylink.fees.config import FeeConfig
from paylink.models import (
    FeeTransaction,
    FeeTransactionStatus,
    PaymentRequest,
    RequestStatus,
    utcnow,
)


class RecordStore(Protocol):
    async def create_request(self, request: PaymentRequest) -> PaymentRequest: ...

    async def get_request(self, request_id: str) -> Optional[PaymentRequest]: ...

    async def list_requests(
        self,
        creator_wallet: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[PaymentRequest]: ...

    async def find_request_by_tx_hash(self, tx_hash: str) -> Optional[PaymentRequest]: ...

    async def transition_request(
        self, request_id: str, expected: RequestStatus, new: RequestStatus
    ) -> Optional[PaymentRequest]: ...

    async def settle(
        self,
        request_id: str,
        tx_hash: str,
        fee_tx_hash: str,
        creator_reward_tx_hash: str,
        fee_transaction: FeeTransaction,
        paid_at: datetime,
        payer_agent_id: Optional[str] = None,
    ) -> Optional[PaymentRequest]: ...

    async def reserve_fee_transaction(self, record: FeeTransaction) -> Tuple[FeeTransaction, bool]: ...

    async def get_fee_transaction(self, fee_transaction_id: str) -> Optional[FeeTransaction]: ...

    async def find_pending_fee_transaction(
        self, request_id: str, payer_wallet: str
    ) -> Optional[FeeTransaction]: ...

    async def list_fee_transactions(self, request_id: str) -> List[FeeTransaction]: ...

    async def fail_pending_fee_transactions(self, request_id: str) -> int: ...

    async def list_pending_expired(self, now: datetime) -> List[PaymentRequest]: ...

    async def load_fee_config(self) -> Optional[FeeConfig]: ...

    async def save_fee_config(self, config: FeeConfig) -> FeeConfig: ...


class InMemoryRecordStore:
    """Process-local store used in development and tests"""

    def __init__(self):
        self.requests: Dict[str, PaymentRequest] = {}
        self.fee_transactions: Dict[str, FeeTransaction] = {}
        self.fee_config: Optional[FeeConfig] = None
        self._write_lock = asyncio.Lock()

    # ===== PAYMENT REQUESTS =====

    async def create_request(self, request: PaymentRequest) -> PaymentRequest:
        async with self._write_lock:
            if request.id in self.requests:
                raise ValueError(f"Request {request.id} already exists")
            self.requests[request.id] = request
        return request

    async def get_request(self, request_id: str) -> Optional[PaymentRequest]:
        return self.requests.get(request_id)

    async def list_requests(
        self,
        creator_wallet: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[PaymentRequest]:
        requests = list(self.requests.values())
        if creator_wallet:
            requests = [
                r for r in requests
                if same_address(r.creator_wallet or r.receiver, creator_wallet)
            ]
        if status:
            requests = [r for r in requests if r.status is status]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    async def find_request_by_tx_hash(self, tx_hash: str) -> Optional[PaymentRequest]:
        needle = tx_hash.lower()
        for request in self.requests.values():
            hashes = {h.lower() for h in (request.tx_hash, request.fee_tx_hash, request.creator_reward_tx_hash) if h}
            if needle in hashes:
                return request
        return None

    async def transition_request(
        self, request_id: str, expected: RequestStatus, new: RequestStatus
    ) -> Optional[PaymentRequest]:
        async with self._write_lock:
            current = self.requests.get(request_id)
            if current is None or current.status is not expected:
                return None
            updated = current.model_copy(update={"status": new})
            self.requests[request_id] = updated
            return updated

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
        async with self._write_lock:
            current = self.requests.get(request_id)
            if current is None or current.status is not RequestStatus.PENDING:
                return None

            for h in {tx_hash, fee_tx_hash, creator_reward_tx_hash}:
                owner = await self.find_request_by_tx_hash(h)
                if owner is not None and owner.id != request_id:
                    raise TransactionAlreadyUsed(
                        f"Transaction {h} already settled request {owner.id}",
                        details={"tx_hash": h, "request_id": owner.id},
                    )

            updated = current.model_copy(update={
                "status": RequestStatus.PAID,
                "tx_hash": tx_hash,
                "fee_tx_hash": fee_tx_hash,
                "creator_reward_tx_hash": creator_reward_tx_hash,
                "paid_at": paid_at,
                "payer_agent_id": payer_agent_id or current.payer_agent_id,
            })
            self.requests[request_id] = updated

            now = utcnow()
            for record in list(self.fee_transactions.values()):
                if (
                    record.payment_request_id == request_id
                    and record.id != fee_transaction.id
                    and record.status is FeeTransactionStatus.PENDING
                ):
                    self.fee_transactions[record.id] = record.model_copy(update={
                        "status": FeeTransactionStatus.FAILED,
                        "updated_at": now,
                    })

            winner = self.fee_transactions.get(fee_transaction.id, fee_transaction)
            self.fee_transactions[winner.id] = winner.model_copy(update={
                "status": FeeTransactionStatus.COLLECTED,
                "payment_tx_hash": tx_hash,
                "platform_fee_tx_hash": fee_tx_hash,
                "creator_reward_tx_hash": creator_reward_tx_hash,
                "updated_at": now,
            })
            return updated

    async def list_pending_expired(self, now: datetime) -> List[PaymentRequest]:
        return [
            r for r in self.requests.values()
            if r.status is RequestStatus.PENDING and r.is_past_expiry(now)
        ]

    # ===== FEE TRANSACTIONS =====

    async def reserve_fee_transaction(self, record: FeeTransaction) -> Tuple[FeeTransaction, bool]:
        """Append a PENDING record unless one already exists for this request and payer"""
        async with self._write_lock:
            existing = self._pending_for(record.payment_request_id, record.payer_wallet)
            if existing is not None:
                return existing, False
            self.fee_transactions[record.id] = record
            return record, True

    async def get_fee_transaction(self, fee_transaction_id: str) -> Optional[FeeTransaction]:
        return self.fee_transactions.get(fee_transaction_id)

    async def find_pending_fee_transaction(
        self, request_id: str, payer_wallet: str
    ) -> Optional[FeeTransaction]:
        return self._pending_for(request_id, payer_wallet)

    def _pending_for(self, request_id: str, payer_wallet: str) -> Optional[FeeTransaction]:
        for record in self.fee_transactions.values():
            if (
                record.payment_request_id == request_id
                and record.status is FeeTransactionStatus.PENDING
                and same_address(record.payer_wallet, payer_wallet)
            ):
                return record
        return None

    async def list_fee_transactions(self, request_id: str) -> List[FeeTransaction]:
        return sorted(
            (r for r in self.fee_transactions.values() if r.payment_request_id == request_id),
            key=lambda r: r.created_at,
        )

    async def fail_pending_fee_transactions(self, request_id: str) -> int:
        async with self._write_lock:
            failed = 0
            now = utcnow()
            for record in list(self.fee_transactions.values()):
                if record.payment_request_id == request_id and record.status is FeeTransactionStatus.PENDING:
                    self.fee_transactions[record.id] = record.model_copy(update={
                        "status": FeeTransactionStatus.FAILED,
                        "updated_at": now,
                    })
                    failed += 1
            return failed

    # ===== FEE CONFIG =====

    async def load_fee_config(self) -> Optional[FeeConfig]:
        return self.fee_config

    async def save_fee_config(self, config: FeeConfig) -> FeeConfig:
        self.fee_config = config
        return config
