"""
Microfinance Back Office

Loan lifecycle, EMI scheduling, payment ledger and collection reporting
for a microfinance branch network. All money math uses Decimal.
"""

__version__ = "1.0.0"
