"""
Settlement verification for PayLink
"""

from paylink.settlement.verifier import SettlementVerifier

__all__ = ["SettlementVerifier"]
