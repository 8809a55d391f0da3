"""
PayLink core service

Wires the fee engine, price oracle, chain readers, ledger and settlement
verifier together and exposes the inbound operations the HTTP layer and the
action dispatcher call.
"""

from datetime import datetime
from typing import Callable, List, Optional

import structlog
from pydantic import ValidationError

from paylink.chain.reader import BalanceReader, ReceiptReader
from paylink.chain.web3_reader import Web3ChainReader
from paylink.chains import supported_networks
from paylink.config import CoreSettings, get_settings
from paylink.errors import Expired, InvalidRequest
from paylink.fees.calculator import FeeCalculator
from paylink.fees.config import FeeConfig, FeeConfigProvider
from paylink.fees.instructions import build_instructions
from paylink.fees.reservation import FeeReservations
from paylink.ledger.ledger import RequestLedger, checksum_address, terminal_error
from paylink.ledger.store import InMemoryRecordStore, RecordStore
from paylink.models import (
    FeeTransaction,
    PaymentRequest,
    QuoteResult,
    RequestStatus,
    VerificationResult,
    utcnow,
)
from paylink.notifications import LogNotificationSink, Notifier, WebhookNotificationSink
from paylink.pricing.coingecko import CoinGeckoPriceSource
from paylink.pricing.oracle import PriceOracle, PriceSource
from paylink.settlement.verifier import SettlementVerifier

logger = structlog.get_logger()


class PaymentCore:
    """Facade over the fee and settlement components"""

    def __init__(
        self,
        store: RecordStore,
        balances: BalanceReader,
        receipts: ReceiptReader,
        price_source: PriceSource,
        fee_config: FeeConfigProvider,
        notifier: Optional[Notifier] = None,
        rpc_timeout_seconds: float = 8.0,
        price_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.fee_config = fee_config
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.price_source = price_source

        self.oracle = PriceOracle(price_source, fee_config, timeout_seconds=price_timeout_seconds)
        self.calculator = FeeCalculator(balances, self.oracle, rpc_timeout_seconds=rpc_timeout_seconds)
        self.ledger = RequestLedger(store, self.notifier, clock=clock)
        self.reservations = FeeReservations(store, self.calculator, fee_config)
        self.verifier = SettlementVerifier(
            self.ledger,
            receipts,
            self.reservations,
            notifier=self.notifier,
            rpc_timeout_seconds=rpc_timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Optional[CoreSettings] = None) -> "PaymentCore":
        """Build the production wiring: web3 readers, CoinGecko prices, Supabase or in-memory store"""
        settings = settings or get_settings()
        defaults = FeeConfig.from_settings(settings)

        if settings.use_supabase:
            # Imported lazily so the in-memory setup does not need Supabase credentials
            from paylink.database.client import SupabaseRecordStore
            store = SupabaseRecordStore(settings.supabase_url, settings.supabase_key, defaults)
        else:
            logger.warning("using_in_memory_store", reason="SUPABASE_URL/SUPABASE_KEY not set")
            store = InMemoryRecordStore()

        reader = Web3ChainReader({name: settings.rpc_url_for(name) for name in supported_networks()})
        provider = FeeConfigProvider(
            defaults,
            loader=store.load_fee_config,
            ttl_seconds=settings.fee_config_cache_ttl_seconds,
        )

        sinks = [LogNotificationSink()]
        if settings.webhook_url:
            sinks.append(WebhookNotificationSink(
                settings.webhook_url,
                secret=settings.webhook_secret,
                timeout_seconds=settings.webhook_timeout_seconds,
            ))

        return cls(
            store=store,
            balances=reader,
            receipts=reader,
            price_source=CoinGeckoPriceSource(settings.coingecko_base_url),
            fee_config=provider,
            notifier=Notifier(sinks),
            rpc_timeout_seconds=settings.rpc_timeout_seconds,
            price_timeout_seconds=settings.price_fetch_timeout_seconds,
        )

    # ===== REQUEST LIFECYCLE =====

    async def create_request(self, **fields) -> PaymentRequest:
        return await self.ledger.create_request(**fields)

    async def get_request(self, request_id: str) -> PaymentRequest:
        return await self.ledger.get(request_id)

    async def list_requests(
        self,
        creator_wallet: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[PaymentRequest]:
        return await self.ledger.list_requests(creator_wallet=creator_wallet, status=status)

    async def cancel_request(
        self,
        request_id: str,
        requested_by: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> PaymentRequest:
        return await self.ledger.cancel(request_id, requested_by=requested_by, signature=signature)

    async def sweep_expired(self) -> int:
        return await self.ledger.sweep_expired()

    async def fee_transactions(self, request_id: str) -> List[FeeTransaction]:
        await self.ledger.get(request_id)
        return await self.store.list_fee_transactions(request_id)

    # ===== FEES AND SETTLEMENT =====

    async def quote(
        self,
        request_id: str,
        payer_address: str,
        payer_agent_id: Optional[str] = None,
    ) -> QuoteResult:
        """
        Fee quote plus the three transfers the payer must execute.

        The first quote for a payer is locked: asking again returns the same
        fee even if prices or the fee record changed in between.
        """
        payer = checksum_address(payer_address, "payer")
        if payer is None:
            raise InvalidRequest("payer_address is required")

        request = await self.ledger.get(request_id, lazy_expiry=False)
        if request.status.is_terminal:
            raise terminal_error(request, request.status)
        if request.is_past_expiry(self.clock()):
            raise Expired(
                f"Request {request.id} has expired",
                details={"request_id": request.id, "expires_at": request.expires_at.isoformat()},
            )

        fee_transaction, reused = await self.reservations.locked_quote(request, payer, payer_agent_id)
        instructions = build_instructions(request, fee_transaction.quote, fee_transaction.treasury_wallet)
        return QuoteResult(
            request_id=request.id,
            fee_transaction_id=fee_transaction.id,
            reused=reused,
            quote=fee_transaction.quote,
            instructions=instructions,
        )

    async def verify(
        self,
        request_id: str,
        tx_hash: str,
        fee_tx_hash: Optional[str] = None,
        creator_reward_tx_hash: Optional[str] = None,
        payer_agent_id: Optional[str] = None,
    ) -> VerificationResult:
        return await self.verifier.verify(
            request_id,
            tx_hash,
            fee_tx_hash=fee_tx_hash,
            creator_reward_tx_hash=creator_reward_tx_hash,
            payer_agent_id=payer_agent_id,
        )

    # ===== FEE RECORD =====

    async def update_fee_config(self, **changes) -> FeeConfig:
        """Apply and persist operator changes; locked quotes are unaffected"""
        try:
            updated = await self.fee_config.update(**changes)
        except ValidationError as e:
            raise InvalidRequest(
                "Invalid fee configuration",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e
        await self.store.save_fee_config(updated)
        return updated

    async def close(self) -> None:
        await self.notifier.close()
        close = getattr(self.price_source, "close", None)
        if close is not None:
            await close()
