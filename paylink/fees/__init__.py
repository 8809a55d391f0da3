"""
Fee module for PayLink
Dual-token fee model: fee record, calculator, instruction builder and locked quotes
"""
