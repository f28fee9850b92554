"""
Loan Servicing Backend

Payment ledger and reconciliation engine for a consumer loan book:
waterfall payment allocation, interest accrual, exactly-once ledger writes,
verified-payment matching with a manual reconciliation queue, and a
duplicate-safe reminder scheduler.

All monetary values use Decimal for exact arithmetic.
"""

__version__ = "1.0.0"
