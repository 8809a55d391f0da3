"""
Ledger module for PayLink
Payment request lifecycle and the record store contract
"""

from paylink.ledger.ledger import RequestLedger
from paylink.ledger.store import InMemoryRecordStore, RecordStore

__all__ = ["RequestLedger", "InMemoryRecordStore", "RecordStore"]
