"""
EMI Ledger

EMI scheduling, penalty accrual and offline payment reconciliation for a
microloan collection client.
"""

__version__ = "1.0.0"
