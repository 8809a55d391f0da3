"""
web3.py implementation of the balance and receipt readers
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Tuple

import structlog
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound as Web3TransactionNotFound

from paylink.chain.reader import TransactionReceipt, decode_transfer_logs
from paylink.chains import get_chain
from paylink.errors import RpcUnavailable

logger = structlog.get_logger()

# Minimal ERC20 ABI for balance reads
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]


class Web3ChainReader:
    """
    Reads balances and receipts over JSON-RPC.

    One AsyncWeb3 instance per network, created on first use. Call timeouts
    are enforced by the callers; this class only translates RPC failures.
    """

    def __init__(self, rpc_urls: Dict[str, str]):
        self.rpc_urls = {k: v for k, v in rpc_urls.items() if v}
        self._clients: Dict[str, AsyncWeb3] = {}
        self._decimals: Dict[Tuple[str, str], int] = {}

    def _w3(self, network: str) -> AsyncWeb3:
        name = get_chain(network).name
        if name not in self._clients:
            url = self.rpc_urls.get(name)
            if not url:
                raise RpcUnavailable(f"No RPC URL configured for network: {name}", details={"network": name})
            self._clients[name] = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url))
        return self._clients[name]

    async def _token_decimals(self, network: str, contract) -> int:
        key = (network, contract.address)
        if key not in self._decimals:
            self._decimals[key] = await contract.functions.decimals().call()
        return self._decimals[key]

    async def get_token_balance(self, address: str, token_contract: str, network: str) -> Decimal:
        w3 = self._w3(network)
        contract = w3.eth.contract(address=Web3.to_checksum_address(token_contract), abi=ERC20_ABI)
        raw = await contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        decimals = await self._token_decimals(network, contract)
        return Decimal(raw).scaleb(-decimals)

    async def get_transaction_receipt(self, tx_hash: str, network: str) -> Optional[TransactionReceipt]:
        w3 = self._w3(network)
        try:
            receipt = await w3.eth.get_transaction_receipt(tx_hash)
        except Web3TransactionNotFound:
            return None

        tx = await w3.eth.get_transaction(tx_hash)
        block_number = receipt.get("blockNumber")
        block_timestamp = None
        if block_number is not None:
            block = await w3.eth.get_block(block_number)
            block_timestamp = datetime.fromtimestamp(block["timestamp"], tz=timezone.utc)

        logger.debug("receipt_fetched", tx_hash=tx_hash, network=network, block_number=block_number)

        return TransactionReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=block_number,
            block_timestamp=block_timestamp,
            from_address=Web3.to_checksum_address(tx["from"]),
            to_address=Web3.to_checksum_address(tx["to"]) if tx.get("to") else None,
            value=int(tx.get("value", 0)),
            token_transfers=decode_transfer_logs(tx_hash, receipt.get("logs", [])),
        )
