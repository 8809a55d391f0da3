"""
HTTP surface for PayLink
"""
