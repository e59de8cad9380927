"""
YNAB API client.

Provides:
- Create transactions (POST /budgets/{budget_id}/transactions)
- List categories (GET /budgets/{budget_id}/categories)

Implements the TransactionSubmissionPort.
"""

from .client import ImportIdConflict, YnabAPIError, YnabClient, build_transaction_payload

__all__ = [
    "ImportIdConflict",
    "YnabAPIError",
    "YnabClient",
    "build_transaction_payload",
]
