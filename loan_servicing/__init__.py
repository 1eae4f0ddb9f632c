"""
Loan Servicing Engine

Calculation core of a micro-lending operation: installment schedules,
daily late penalties, open-ended monthly cycles, payment allocation with
role-gated discounts, cancellation and refinancing, all in Decimal
arithmetic with an audit trail.
"""

__version__ = "1.0.0"
