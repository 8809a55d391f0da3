"""
PayLink Core
Fee computation and settlement verification for non-custodial payment links
"""

__version__ = "0.1.0"
