"""
Loan Ledger

Loan lifecycle and payment-ledger core for a micro-lending back office:
flat-rate loan calculation, payment recording and reversal with balance
reconciliation, and scheduled overdue detection with notifications.
"""

__version__ = "1.0.0"
