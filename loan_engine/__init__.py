"""
Loan Lifecycle Financial Engine

Turns a principal/rate/term into a repayment contract, applies payments under
a fixed allocation waterfall, tracks delinquency against regulatory day-count
thresholds and gates disbursements against a monthly liquidity cap.
All monetary math uses Decimal.
"""

__version__ = "1.0.0"
