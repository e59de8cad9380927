"""
CLI runner module.

Provides commands:
- add-account / store-token: Register bank accounts and their tokens
- import: Fetch bank transactions
- categorize: Rules first, then the AI provider
- submit: Push to YNAB
- pipeline: End-to-end processing
- rules / override / retry / categories: Review and maintenance
"""

from .main import AppContext, build_context, create_cli, main

__all__ = [
    "AppContext",
    "build_context",
    "create_cli",
    "main",
]
