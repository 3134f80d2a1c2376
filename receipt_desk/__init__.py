"""
Receipt Desk - Source Package

An internal expense-receipt tool for a small organization:
members submit receipts, staff review and aggregate them,
the owner manages who gets access.

DESIGN PRINCIPLES:
1. A receipt never changes without a matching revision
2. Money is stored in minor units (integer cents)
3. Permissions are checked against fresh data on every write
4. Deleting is soft - nothing is physically removed
5. Storage and file backends are swappable
"""

__version__ = "1.0.0"
__author__ = "Receipt Desk Team"
