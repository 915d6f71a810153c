"""
Microloan Route-Collection Engine

Flat-rate amortization, FIFO payment allocation, arrears tracking and
daily cash reconciliation for field collectors. All money uses Decimal.
"""

__version__ = "1.0.0"
