"""
Branch Ledger

Staff cash ledger for branch operations: commission math on Decimal, atomic
balance updates, compensating reversals and daily aggregation.
"""

__version__ = "1.0.0"
