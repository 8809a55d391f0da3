"""
Database integration layer for PayLink
"""

from paylink.database.client import SupabaseRecordStore

__all__ = ["SupabaseRecordStore"]
