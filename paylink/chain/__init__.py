"""
Chain access for PayLink
Read-only balance and receipt lookups over JSON-RPC
"""

from paylink.chain.reader import (
    BalanceReader,
    ReceiptReader,
    TokenTransfer,
    TransactionReceipt,
    decode_transfer_logs,
)
from paylink.chain.web3_reader import Web3ChainReader

__all__ = [
    "BalanceReader",
    "ReceiptReader",
    "TokenTransfer",
    "TransactionReceipt",
    "decode_transfer_logs",
    "Web3ChainReader",
]
