"""
Amortization kernel: recognition schedules, encrypted ledger credentials and
journal posting against an external accounting ledger.
"""

__version__ = "0.1.0"
