"""
Fio bank API client.

Provides:
- Transactions for a date range (GET /periods/{token}/{from}/{to}/transactions.json)

Implements the TransactionProvider port.
"""

from .client import FioClient, parse_fio_date, parse_fio_transaction

__all__ = [
    "FioClient",
    "parse_fio_date",
    "parse_fio_transaction",
]
