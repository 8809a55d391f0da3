"""
Pytest configuration and shared fixtures
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from paylink.chain.reader import TokenTransfer, TransactionReceipt
from paylink.errors import PriceUnavailable
from paylink.fees.config import FeeConfigProvider
from paylink.ledger.store import InMemoryRecordStore
from paylink.notifications import Notifier
from paylink.service import PaymentCore
from tests.factories import (
    PAYER,
    RECEIVER,
    SEPOLIA_LCX,
    SEPOLIA_USDC,
    TREASURY,
    FeeConfigFactory,
)

START = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def units(amount, decimals: int) -> int:
    return int(Decimal(str(amount)).scaleb(decimals))


def erc20(token: str, sender: str, to: str, value: int, tx: str = "") -> TokenTransfer:
    return TokenTransfer(tx_hash=tx, token_address=token, from_address=sender, to_address=to, value=value)


def make_receipt(
    tx: str,
    transfers=(),
    sender: str = PAYER,
    value: int = 0,
    to: Optional[str] = None,
    status: int = 1,
    block_number: Optional[int] = 100,
    block_timestamp: Optional[datetime] = START,
) -> TransactionReceipt:
    return TransactionReceipt(
        tx_hash=tx,
        status=status,
        block_number=block_number,
        block_timestamp=block_timestamp,
        from_address=sender,
        to_address=to,
        value=value,
        token_transfers=tuple(transfers),
    )


def bundled_usdc_lcx_receipt(
    tx: str,
    amount="10",
    fee_platform="2",
    fee_creator="2",
    payer: str = PAYER,
    block_timestamp: datetime = START,
) -> TransactionReceipt:
    """Single transaction carrying payment (USDC) plus both LCX fee transfers"""
    return make_receipt(
        tx,
        transfers=[
            erc20(SEPOLIA_USDC, payer, RECEIVER, units(amount, 6), tx),
            erc20(SEPOLIA_LCX, payer, TREASURY, units(fee_platform, 18), tx),
            erc20(SEPOLIA_LCX, payer, RECEIVER, units(fee_creator, 18), tx),
        ],
        sender=payer,
        to=SEPOLIA_USDC,
        block_timestamp=block_timestamp,
    )


class FakeBalanceReader:
    """Reward-token balances keyed by wallet"""

    def __init__(self, balances: Optional[Dict[str, str]] = None):
        self.balances = {k.lower(): Decimal(v) for k, v in (balances or {}).items()}
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[Tuple[str, str, str]] = []

    def set(self, address: str, balance) -> None:
        self.balances[address.lower()] = Decimal(str(balance))

    async def get_token_balance(self, address: str, token_contract: str, network: str) -> Decimal:
        self.calls.append((address, token_contract, network))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.balances.get(address.lower(), Decimal("0"))


class FakeReceiptReader:
    def __init__(self):
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[str] = []

    def add(self, receipt: TransactionReceipt) -> TransactionReceipt:
        self.receipts[receipt.tx_hash.lower()] = receipt
        return receipt

    async def get_transaction_receipt(self, tx_hash: str, network: str) -> Optional[TransactionReceipt]:
        self.calls.append(tx_hash)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.receipts.get(tx_hash.lower())


class FakePriceSource:
    def __init__(self, prices: Optional[Dict[str, str]] = None):
        self.prices = {k: Decimal(v) for k, v in (prices or {}).items()}
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def __call__(self, token: str) -> Decimal:
        self.calls.append(token)
        if self.error is not None:
            raise self.error
        if token not in self.prices:
            raise PriceUnavailable(f"No price for {token}")
        return self.prices[token]


class FakeClock:
    """Monotonic seconds, advanced by hand"""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSink:
    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    async def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def fee_config():
    return FeeConfigFactory()


@pytest.fixture
def config_provider(fee_config):
    return FeeConfigProvider(fee_config)


@pytest.fixture
def balances():
    return FakeBalanceReader()


@pytest.fixture
def receipts():
    return FakeReceiptReader()


@pytest.fixture
def prices():
    return FakePriceSource({"LCX": "0.15", "ETH": "2500"})


@pytest.fixture
def wall_clock():
    return FakeWallClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def core(store, balances, receipts, prices, config_provider, sink, wall_clock) -> PaymentCore:
    """PaymentCore wired to in-memory fakes"""
    return PaymentCore(
        store=store,
        balances=balances,
        receipts=receipts,
        price_source=prices,
        fee_config=config_provider,
        notifier=Notifier([sink]),
        rpc_timeout_seconds=0.5,
        price_timeout_seconds=0.5,
        clock=wall_clock,
    )


@pytest.fixture
def client(core) -> TestClient:
    """FastAPI test client over the fake-backed core"""
    from paylink.api.server import create_app

    with TestClient(create_app(core)) as test_client:
        yield test_client
