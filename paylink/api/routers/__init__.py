"""
HTTP routers for PayLink
"""
