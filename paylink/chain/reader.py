"""
Chain collaborators used by the fee engine and the settlement verifier

The core never talks to an RPC endpoint directly: it depends on a balance
reader and a receipt reader (see ``web3_reader`` for the web3.py
implementation). Receipts are reduced to the decoded token transfers the
verifier matches against.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Tuple

from web3 import Web3

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_EVENT_SIGNATURE))


@dataclass(frozen=True)
class TokenTransfer:
    """A value movement inside a transaction; ``token_address`` None means native asset"""
    tx_hash: str
    token_address: Optional[str]
    from_address: str
    to_address: str
    value: int
    log_index: Optional[int] = None

    @property
    def is_native(self) -> bool:
        return self.token_address is None

    def describe(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "token": self.token_address or "native",
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
        }


@dataclass(frozen=True)
class TransactionReceipt:
    """Mined transaction reduced to what settlement verification needs"""
    tx_hash: str
    status: int
    block_number: Optional[int]
    block_timestamp: Optional[datetime]
    from_address: str
    to_address: Optional[str]
    value: int = 0
    token_transfers: Tuple[TokenTransfer, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def mined(self) -> bool:
        return self.block_number is not None

    def native_transfer(self) -> Optional[TokenTransfer]:
        if self.value <= 0 or not self.to_address:
            return None
        return TokenTransfer(
            tx_hash=self.tx_hash,
            token_address=None,
            from_address=self.from_address,
            to_address=self.to_address,
            value=self.value,
        )

    def transfers(self) -> List[TokenTransfer]:
        """Native value transfer (if any) followed by decoded ERC-20 transfers"""
        native = self.native_transfer()
        return ([native] if native else []) + list(self.token_transfers)


class BalanceReader(Protocol):
    async def get_token_balance(self, address: str, token_contract: str, network: str) -> Decimal:
        """Balance in token units (decimals applied)"""
        ...


class ReceiptReader(Protocol):
    async def get_transaction_receipt(self, tx_hash: str, network: str) -> Optional[TransactionReceipt]:
        """Receipt for a mined transaction, None when unknown or still pending"""
        ...


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


def _topic_address(topic: Any) -> str:
    return Web3.to_checksum_address("0x" + _as_bytes(topic)[-20:].hex())


def decode_transfer_logs(tx_hash: str, logs: Iterable[Mapping[str, Any]]) -> Tuple[TokenTransfer, ...]:
    """
    Decode ERC-20 ``Transfer`` events from raw receipt logs.

    Logs with another signature, or ERC-721 style transfers (indexed token id,
    four topics), are ignored.
    """
    decoded = []
    for log in logs:
        topics = list(log.get("topics") or [])
        if len(topics) != 3:
            continue
        if "0x" + _as_bytes(topics[0]).hex() != TRANSFER_TOPIC.lower():
            continue
        data = _as_bytes(log.get("data") or b"")
        if len(data) != 32:
            continue
        decoded.append(
            TokenTransfer(
                tx_hash=tx_hash,
                token_address=Web3.to_checksum_address(log["address"]),
                from_address=_topic_address(topics[1]),
                to_address=_topic_address(topics[2]),
                value=int.from_bytes(data, "big"),
                log_index=log.get("logIndex"),
            )
        )
    return tuple(decoded)
