"""
Pricing module for PayLink
USD reference prices with a shared TTL cache and fixed fallbacks
"""
